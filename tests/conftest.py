import datetime

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def build_cert(common_name=None, dns_names=(), issuer=None, is_ca=False):
    """Return (certificate, key). `issuer` is a (certificate, key) pair or None."""
    key = ec.generate_private_key(ec.SECP256R1())
    attrs = [x509.NameAttribute(NameOID.ORGANIZATION_NAME, "sslcerts tests")]
    if common_name:
        attrs.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))
    subject = x509.Name(attrs)

    issuer_name, signing_key = subject, key
    if issuer is not None:
        issuer_name, signing_key = issuer[0].subject, issuer[1]

    now = datetime.datetime.now(datetime.timezone.utc)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
    )
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(n) for n in dns_names]), critical=False)
    return builder.sign(signing_key, hashes.SHA256()), key


def to_der(cert):
    return cert.public_bytes(serialization.Encoding.DER)


@pytest.fixture
def make_der():
    """Factory for throwaway DER certificates."""
    def _make(common_name=None, dns_names=()):
        cert, _ = build_cert(common_name, dns_names)
        return to_der(cert)
    return _make


@pytest.fixture(scope="session")
def server_chain(tmp_path_factory):
    """A CA-issued leaf for 127.0.0.1, written as a PEM chain plus key."""
    ca = build_cert("sslcerts Test CA", is_ca=True)
    leaf = build_cert("localhost", dns_names=("localhost",), issuer=ca)

    directory = tmp_path_factory.mktemp("server")
    certfile = directory / "chain.pem"
    keyfile = directory / "key.pem"
    certfile.write_bytes(
        leaf[0].public_bytes(serialization.Encoding.PEM)
        + ca[0].public_bytes(serialization.Encoding.PEM))
    keyfile.write_bytes(leaf[1].private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ))
    return {
        "certfile": str(certfile),
        "keyfile": str(keyfile),
        "ders": [to_der(leaf[0]), to_der(ca[0])],
    }


class ScriptedSocket:
    """Plaintext socket stand-in that replays server chunks in order."""

    def __init__(self, *chunks):
        self.chunks = list(chunks)
        self.events = []
        self.timeout = None
        self.closed = False

    def settimeout(self, timeout):
        self.timeout = timeout

    def recv(self, bufsize):
        self.events.append("recv")
        if not self.chunks:
            return b""
        chunk = self.chunks.pop(0)
        if isinstance(chunk, BaseException):
            raise chunk
        return chunk

    def sendall(self, data):
        self.events.append(("send", data))

    @property
    def sent(self):
        return [e[1] for e in self.events if isinstance(e, tuple)]

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


@pytest.fixture
def scripted_socket():
    return ScriptedSocket
