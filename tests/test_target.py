import pytest

from sslcerts import Target, TargetResolutionError, parse_target


@pytest.mark.parametrize("raw, expected", [
    ("example.com", Target("example.com", 443, "https")),
    ("example.com:8443", Target("example.com", 8443, "https")),
    ("example.com:587", Target("example.com", 587, "https")),
    ("smtp://mail.example.com", Target("mail.example.com", 587, "smtp")),
    ("smtp://mail.example.com:25", Target("mail.example.com", 25, "smtp")),
    ("imap://mail.example.com", Target("mail.example.com", 143, "imap")),
    ("pop3://mail.example.com", Target("mail.example.com", 110, "pop3")),
    ("https://github.com/some/path", Target("github.com", 443, "https")),
    ("HTTPS://github.com", Target("github.com", 443, "https")),
    ("tls://db.example.com:5433", Target("db.example.com", 5433, "tls")),
    ("ldaps://dir.example.com", Target("dir.example.com", 443, "other")),
    ("pop://mail.example.com", Target("mail.example.com", 110, "pop3")),
    ("imap3://mail.example.com", Target("mail.example.com", 143, "imap")),
])
def test_parse_target(raw, expected):
    assert parse_target(raw) == expected


@pytest.mark.parametrize("raw, scheme, port", [
    ("mail.example.com:smtp", "smtp", 587),
    ("mail.example.com:imap", "imap", 143),
    ("mail.example.com:pop3", "pop3", 110),
    ("mail.example.com:pop", "pop3", 110),
    ("mail.example.com:https", "https", 443),
])
def test_service_name_in_port_position(raw, scheme, port):
    target = parse_target(raw)
    assert target.host == "mail.example.com"
    assert (target.scheme, target.port) == (scheme, port)


@pytest.mark.parametrize("raw, expected", [
    ("[::1]:8443", Target("::1", 8443, "https")),
    ("[::1]", Target("::1", 443, "https")),
    ("::1", Target("::1", 443, "https")),
    ("smtp://[2001:db8::25]", Target("2001:db8::25", 587, "smtp")),
])
def test_ipv6_hosts(raw, expected):
    assert parse_target(raw) == expected


@pytest.mark.parametrize("raw", [
    "",
    "   ",
    "example.com:",
    "example.com:http-alt",
    "example.com:0",
    "example.com:65536",
    "example.com:-1",
    ":443",
    "smtp://",
    "smtp://:25",
    "https://example.com:abc",
    "://example.com",
    "[::1",
    "[::1]x",
    "a:b:c",
])
def test_invalid_targets(raw):
    with pytest.raises(TargetResolutionError):
        parse_target(raw)


def test_resolution_error_is_value_error():
    with pytest.raises(ValueError):
        parse_target("example.com:99999")


def test_target_is_immutable():
    target = parse_target("example.com")
    with pytest.raises(AttributeError):
        target.port = 8443
