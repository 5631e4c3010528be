#!/usr/bin/env python3
"""
sslcerts - Save the certificate chain a TLS endpoint presents

Connects to a TCP endpoint, upgrades to TLS (directly, or via STARTTLS for
SMTP, IMAP and POP3), and writes the peer's chain to disk:
- <host>_bundle.pem with every certificate, leaf first
- one <name>.crt per certificate, never overwriting existing files

Usage:
    sslcerts example.com
    sslcerts example.com:8443
    sslcerts smtp://mail.example.com
    sslcerts --insecure self-signed.example.com
"""

import argparse
import base64
import ipaddress
import itertools
import logging
import math
import os
import re
import socket
import ssl
import sys
import time
from pathlib import Path
from typing import Callable, Iterator, List, NamedTuple, Optional, Sequence, Tuple, Union

from cryptography import x509
from cryptography.x509.oid import NameOID

__version__ = "1.0.0"

logger = logging.getLogger(__name__)


# ANSI colors for terminal output
class Colors:
    RED = '\033[91m'
    GREEN = '\033[92m'
    RESET = '\033[0m'
    BOLD = '\033[1m'


def color(text: str, c: str, stream=None) -> str:
    """Apply color if the stream is a tty."""
    stream = stream or sys.stdout
    if stream.isatty():
        return f"{c}{text}{Colors.RESET}"
    return text


DEFAULT_TIMEOUT = 10.0
DEFAULT_PORT = 443
RECV_SIZE = 4096
MAX_REPLY_SIZE = 64 * 1024

# Default ports for protocols
PROTOCOL_PORTS = {
    'https': 443,
    'tls': 443,
    'smtp': 587,      # STARTTLS
    'imap': 143,      # STARTTLS
    'pop3': 110,      # STARTTLS
}

SCHEME_ALIASES = {
    'imap3': 'imap',
    'pop': 'pop3',
}

# Service names accepted in place of a numeric port (host:smtp)
PORT_ALIASES = {'https', 'smtp', 'imap', 'imap3', 'pop3', 'pop'}


# =============================================================================
# Errors
# =============================================================================

class SSLCertsError(Exception):
    """Base class for every error that ends a run."""


class TargetResolutionError(SSLCertsError, ValueError):
    """The target string could not be turned into host, port and scheme."""


class TargetConnectionError(SSLCertsError, ConnectionError):
    """TCP connect failed or timed out."""


class NegotiationError(SSLCertsError):
    """The plaintext STARTTLS exchange failed."""


class TLSHandshakeError(SSLCertsError):
    """TLS handshake or certificate verification failed."""


class NoCertificatesFound(SSLCertsError):
    """The peer presented an empty certificate chain."""


class FileWriteError(SSLCertsError, OSError):
    """The bundle or an individual certificate file could not be written."""


# =============================================================================
# Target resolution
# =============================================================================

class Target(NamedTuple):
    host: str
    port: int
    scheme: str


def _normalize_scheme(scheme: str) -> str:
    scheme = scheme.lower()
    scheme = SCHEME_ALIASES.get(scheme, scheme)
    if scheme not in PROTOCOL_PORTS:
        return 'other'
    return scheme


def _parse_port(port_str: str) -> int:
    try:
        port = int(port_str)
    except ValueError:
        raise TargetResolutionError(f"invalid port: {port_str!r}") from None
    if not 1 <= port <= 65535:
        raise TargetResolutionError(f"port out of range: {port}")
    return port


def _is_ipv6(text: str) -> bool:
    try:
        ipaddress.IPv6Address(text)
    except ValueError:
        return False
    return True


def _split_host_port(hostport: str) -> Tuple[str, Optional[str]]:
    """Split host[:port], accepting [v6]:port. Port is None when absent."""
    if hostport.startswith('['):
        end = hostport.find(']')
        if end == -1:
            raise TargetResolutionError(f"missing ']' in address: {hostport!r}")
        host, rest = hostport[1:end], hostport[end + 1:]
        if not rest:
            return host, None
        if not rest.startswith(':'):
            raise TargetResolutionError(f"unexpected text after address: {rest!r}")
        return host, rest[1:]

    if _is_ipv6(hostport):
        return hostport, None

    host, sep, port_str = hostport.rpartition(':')
    if not sep:
        return hostport, None
    if ':' in host:
        raise TargetResolutionError(f"too many colons in address: {hostport!r}")
    return host, port_str


def parse_target(target: str) -> Target:
    """Parse scheme://host[:port], host:port or host into a Target."""
    target = target.strip()
    if not target:
        raise TargetResolutionError("empty target")

    if '://' in target:
        scheme, _, remainder = target.partition('://')
        if not scheme:
            raise TargetResolutionError(f"missing scheme in {target!r}")
        scheme = _normalize_scheme(scheme)
        remainder = remainder.split('/', 1)[0]
        host, port_str = _split_host_port(remainder)
        if port_str is None:
            port = PROTOCOL_PORTS.get(scheme, DEFAULT_PORT)
        else:
            port = _parse_port(port_str)
    else:
        host, port_str = _split_host_port(target)
        scheme = 'https'
        if port_str is None:
            port = DEFAULT_PORT
        elif port_str.lower() in PORT_ALIASES:
            scheme = _normalize_scheme(port_str)
            port = PROTOCOL_PORTS[scheme]
        else:
            port = _parse_port(port_str)

    if not host:
        raise TargetResolutionError(f"empty host in {target!r}")

    return Target(host, port, scheme)


# =============================================================================
# STARTTLS negotiation
# =============================================================================

READ = 'read'
WRITE = 'write'

PHASE_PLAINTEXT = 'plaintext'
PHASE_NEGOTIATING = 'negotiating'
PHASE_READY = 'ready'


def _single_line(line: bytes) -> bool:
    return True


def _smtp_final(line: bytes) -> bool:
    # "250-..." continues a reply, "250 ..." ends it
    return line[3:4] != b'-'


def _tagged(tag: bytes) -> Callable[[bytes], bool]:
    prefix = tag + b' '

    def is_final(line: bytes) -> bool:
        return line.startswith(prefix)
    return is_final


class Step(NamedTuple):
    """One scripted action. For READ, `data` is the expected reply prefix."""
    action: str
    data: Union[bytes, Tuple[bytes, ...]]
    is_final: Callable[[bytes], bool] = _single_line


class NegotiationState(NamedTuple):
    phase: str
    step: int
    pending: bytes
    reply: Tuple[bytes, ...]


SMTP_SCRIPT = (
    Step(READ, b'220', _smtp_final),
    Step(WRITE, b'EHLO localhost\r\n'),
    Step(READ, b'250', _smtp_final),
    Step(WRITE, b'STARTTLS\r\n'),
    Step(READ, b'220', _smtp_final),
)

POP3_SCRIPT = (
    Step(READ, b'+OK'),
    Step(WRITE, b'STLS\r\n'),
    Step(READ, b'+OK'),
)


def _imap_script(tag: bytes) -> Tuple[Step, ...]:
    return (
        Step(READ, (b'* OK', b'* PREAUTH')),
        Step(WRITE, tag + b' STARTTLS\r\n'),
        Step(READ, tag + b' OK', _tagged(tag)),
    )


# Protocols requiring STARTTLS, keyed by scheme. Callables take a fresh tag.
STARTTLS_SCRIPTS = {
    'smtp': SMTP_SCRIPT,
    'imap': _imap_script,
    'pop3': POP3_SCRIPT,
}


def imap_tags() -> Iterator[bytes]:
    """Yield a001, a002, ..."""
    for n in itertools.count(1):
        yield b'a%03d' % n


class ProtocolNegotiator:
    """Runs the plaintext exchange that makes a server start TLS."""

    def __init__(self, scheme: str, timeout: float = DEFAULT_TIMEOUT,
                 tags: Optional[Iterator[bytes]] = None):
        self.scheme = scheme
        self.timeout = timeout
        self._tags = tags if tags is not None else imap_tags()

    @property
    def upgrades(self) -> bool:
        """True when the scheme negotiates before TLS."""
        return self.scheme in STARTTLS_SCRIPTS

    def script(self) -> Tuple[Step, ...]:
        script = STARTTLS_SCRIPTS.get(self.scheme, ())
        if callable(script):
            script = script(next(self._tags))
        return script

    def negotiate(self, sock: socket.socket) -> NegotiationState:
        """Drive the script on an open plaintext socket.

        Returns the final state with phase PHASE_READY. Raises NegotiationError
        on any unexpected reply, closed connection or timeout.
        """
        state = NegotiationState(PHASE_PLAINTEXT, 0, b'', ())
        steps = self.script()
        if not steps:
            return state._replace(phase=PHASE_READY)

        for step in steps:
            state = self.advance(sock, step, state)

        # Anything buffered now was sent before our TLS ClientHello
        if state.pending:
            raise NegotiationError(
                f"{self.scheme}: unexpected data after STARTTLS reply: {state.pending[:40]!r}")

        logger.debug("%s: negotiation complete after %d steps", self.scheme, state.step)
        return state._replace(phase=PHASE_READY)

    def advance(self, sock: socket.socket, step: Step, state: NegotiationState) -> NegotiationState:
        if step.action == WRITE:
            logger.debug("%s C: %r", self.scheme, step.data)
            sock.settimeout(self.timeout)
            try:
                sock.sendall(step.data)
            except socket.timeout:
                raise NegotiationError(f"{self.scheme}: timed out sending {step.data.strip()!r}") from None
            except OSError as e:
                raise NegotiationError(f"{self.scheme}: failed to send {step.data.strip()!r}: {e}") from e
            return state._replace(phase=PHASE_NEGOTIATING, step=state.step + 1, reply=())

        lines, pending = self._read_reply(sock, state.pending, step.is_final)
        for line in lines:
            logger.debug("%s S: %r", self.scheme, line)
        if not lines[-1].startswith(step.data):
            raise NegotiationError(
                f"{self.scheme}: unexpected reply: {lines[-1].decode(errors='replace')}")
        return NegotiationState(PHASE_NEGOTIATING, state.step + 1, pending, tuple(lines))

    def _read_reply(self, sock: socket.socket, pending: bytes,
                    is_final: Callable[[bytes], bool]) -> Tuple[List[bytes], bytes]:
        """Read one complete reply. The whole reply shares one timeout."""
        deadline = time.monotonic() + self.timeout
        received = len(pending)
        lines = []
        while True:
            while b'\n' not in pending:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise NegotiationError(f"{self.scheme}: timed out waiting for server reply")
                sock.settimeout(remaining)
                try:
                    chunk = sock.recv(RECV_SIZE)
                except socket.timeout:
                    raise NegotiationError(f"{self.scheme}: timed out waiting for server reply") from None
                except OSError as e:
                    raise NegotiationError(f"{self.scheme}: connection error: {e}") from e
                if not chunk:
                    raise NegotiationError(f"{self.scheme}: connection closed by server")
                pending += chunk
                received += len(chunk)
                if received > MAX_REPLY_SIZE:
                    raise NegotiationError(f"{self.scheme}: server reply too long")

            line, _, pending = pending.partition(b'\n')
            line = line.rstrip(b'\r')
            lines.append(line)
            if is_final(line):
                return lines, pending


# =============================================================================
# TLS session
# =============================================================================

def peer_chain(ssock: ssl.SSLSocket) -> List[bytes]:
    """Return the chain the peer sent, as DER, in the order it was sent."""
    if hasattr(ssock, 'get_unverified_chain'):
        # Python 3.13+
        raw = ssock.get_unverified_chain()
    else:
        getter = getattr(getattr(ssock, '_sslobj', None), 'get_unverified_chain', None)
        raw = getter() if getter else None

    chain = []
    for cert in raw or []:
        if isinstance(cert, (bytes, bytearray)):
            chain.append(bytes(cert))
        else:
            chain.append(cert.public_bytes(ssl._ssl.ENCODING_DER))

    if not chain:
        der_cert = ssock.getpeercert(binary_form=True)
        if der_cert:
            chain = [der_cert]
    return chain


class TLSFetcher:
    """Connects, negotiates if needed, and completes the TLS handshake."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, verify: bool = True):
        self.timeout = timeout
        self.verify = verify

    def create_ssl_context(self) -> ssl.SSLContext:
        """Create SSL context for certificate extraction."""
        ctx = ssl.create_default_context()
        if not self.verify:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        return ctx

    def connect(self, target: Target) -> socket.socket:
        try:
            return socket.create_connection((target.host, target.port), timeout=self.timeout)
        except socket.timeout:
            raise TargetConnectionError(
                f"connection to {target.host}:{target.port} timed out") from None
        except OSError as e:
            raise TargetConnectionError(
                f"cannot connect to {target.host}:{target.port}: {e}") from e

    def handshake(self, sock: socket.socket, host: str) -> List[bytes]:
        """Run the TLS handshake on `sock` and return the peer chain."""
        ctx = self.create_ssl_context()
        sock.settimeout(self.timeout)
        try:
            ssock = ctx.wrap_socket(sock, server_hostname=host)
        except ssl.SSLCertVerificationError as e:
            reason = getattr(e, 'verify_message', None) or e
            raise TLSHandshakeError(f"certificate verification failed: {reason}") from e
        except ssl.SSLError as e:
            raise TLSHandshakeError(f"TLS handshake failed: {e}") from e
        except socket.timeout:
            raise TLSHandshakeError("TLS handshake timed out") from None
        except OSError as e:
            raise TLSHandshakeError(f"TLS handshake failed: {e}") from e

        with ssock:
            logger.info("Negotiated %s with %s", ssock.version(), host)
            return peer_chain(ssock)

    def fetch(self, target: Target, negotiator: Optional[ProtocolNegotiator] = None) -> List[bytes]:
        """Return the raw DER chain presented by `target`."""
        if negotiator is None:
            negotiator = ProtocolNegotiator(target.scheme, self.timeout)

        with self.connect(target) as sock:
            if negotiator.upgrades:
                logger.info("Upgrading %s:%d via %s STARTTLS", target.host, target.port, target.scheme)
            negotiator.negotiate(sock)
            return self.handshake(sock, target.host)


# =============================================================================
# Certificate chain
# =============================================================================

def der_to_pem(der_cert: bytes) -> str:
    """Convert DER certificate to PEM format."""
    b64 = base64.b64encode(der_cert).decode('ascii')
    lines = [b64[i:i+64] for i in range(0, len(b64), 64)]
    return "-----BEGIN CERTIFICATE-----\n" + "\n".join(lines) + "\n-----END CERTIFICATE-----\n"


class Certificate(NamedTuple):
    der: bytes
    common_name: Optional[str]
    dns_names: Tuple[str, ...]

    @property
    def pem(self) -> str:
        return der_to_pem(self.der)


def _common_name(cert: x509.Certificate) -> Optional[str]:
    attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attrs:
        return None
    # last CN wins when a subject carries several
    value = attrs[-1].value
    if isinstance(value, bytes):
        value = value.decode('utf-8', errors='replace')
    return value


def _dns_names(cert: x509.Certificate) -> Tuple[str, ...]:
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return ()
    return tuple(san.value.get_values_for_type(x509.DNSName))


def parse_certificate(der_cert: bytes) -> Certificate:
    """Read the common name and SAN DNS names out of a DER certificate."""
    try:
        cert = x509.load_der_x509_certificate(der_cert)
        return Certificate(der_cert, _common_name(cert), _dns_names(cert))
    except (ValueError, x509.DuplicateExtension) as e:
        logger.warning("Could not parse certificate (%d bytes): %s", len(der_cert), e)
        return Certificate(der_cert, None, ())


def extract_chain(raw_chain: Sequence[bytes]) -> List[Certificate]:
    """Convert the peer's raw chain into Certificates, leaf first."""
    if not raw_chain:
        raise NoCertificatesFound("no certificates found")
    return [parse_certificate(der) for der in raw_chain]


# =============================================================================
# Output files
# =============================================================================

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._-]')


def sanitize_filename(name: str) -> str:
    """Drop a leading wildcard label and replace unsafe characters with '_'."""
    if name.startswith('*.'):
        name = name[2:]
    return _UNSAFE_CHARS.sub('_', name)


def certificate_filename(cert: Certificate, index: int) -> str:
    """Derive the .crt name for the certificate at 1-based `index`."""
    for candidate in (cert.common_name, cert.dns_names[0] if cert.dns_names else None):
        if candidate:
            name = sanitize_filename(candidate)
            if name:
                return f"{name}.crt"
    return f"cert_{index}.crt"


class NamedCertificateFile(NamedTuple):
    certificate: Certificate
    filename: str


class WriteResult(NamedTuple):
    bundle_path: Path
    count: int
    written: List[Path]
    skipped: List[Path]


def name_certificates(chain: Sequence[Certificate]) -> List[NamedCertificateFile]:
    return [NamedCertificateFile(cert, certificate_filename(cert, i))
            for i, cert in enumerate(chain, 1)]


def build_bundle(chain: Sequence[Certificate]) -> str:
    """PEM blocks leaf first, separated by one blank line."""
    return "\n".join(cert.pem for cert in chain)


class BundleWriter:
    """Writes <host>_bundle.pem and one .crt file per certificate."""

    def __init__(self, output_dir: Union[str, Path] = '.'):
        self.output_dir = Path(output_dir)

    def bundle_path(self, host: str) -> Path:
        return self.output_dir / f"{host}_bundle.pem"

    def write(self, host: str, chain: Sequence[Certificate]) -> WriteResult:
        if not chain:
            raise NoCertificatesFound("no certificates found")

        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FileWriteError(f"cannot create output directory {self.output_dir}: {e}") from e

        bundle = self.write_bundle(host, chain)
        written, skipped = self.write_individual(chain)
        return WriteResult(bundle, len(chain), written, skipped)

    def write_bundle(self, host: str, chain: Sequence[Certificate]) -> Path:
        path = self.bundle_path(host)
        for i, cert in enumerate(chain, 1):
            logger.info("Adding certificate %d to bundle: %s", i, cert.common_name or '')
        try:
            with open(path, 'w', encoding='ascii', newline='\n') as f:
                f.write(build_bundle(chain))
        except OSError as e:
            raise FileWriteError(f"cannot write bundle {path}: {e}") from e
        return path

    def write_individual(self, chain: Sequence[Certificate]) -> Tuple[List[Path], List[Path]]:
        written, skipped = [], []
        for named in name_certificates(chain):
            path = self.output_dir / named.filename
            try:
                # 'x' refuses to replace a file that already exists
                with open(path, 'x', encoding='ascii', newline='\n') as f:
                    f.write(named.certificate.pem)
            except FileExistsError:
                logger.warning("Individual cert already exists: %s", path)
                skipped.append(path)
                continue
            except OSError as e:
                raise FileWriteError(f"cannot write {path}: {e}") from e
            written.append(path)
        return written, skipped


# =============================================================================
# Pipeline
# =============================================================================

def fetch_certificates(target: Union[str, Target], timeout: float = DEFAULT_TIMEOUT,
                       verify: bool = True, output_dir: Union[str, Path] = '.') -> WriteResult:
    """Resolve, connect, negotiate, handshake, extract and write, in order."""
    resolved = parse_target(target) if isinstance(target, str) else target
    logger.info("Connecting to %s:%d (protocol: %s)...", resolved.host, resolved.port, resolved.scheme)

    fetcher = TLSFetcher(timeout=timeout, verify=verify)
    raw_chain = fetcher.fetch(resolved, ProtocolNegotiator(resolved.scheme, timeout))
    chain = extract_chain(raw_chain)
    return BundleWriter(output_dir).write(resolved.host, chain)


# =============================================================================
# Command line
# =============================================================================

_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ms|s|m|h)')
_DURATION_UNITS = {'ms': 0.001, 's': 1, 'm': 60, 'h': 3600}


def parse_duration(value: str) -> float:
    """Parse '10s', '500ms', '1m30s' or plain seconds into seconds."""
    text = value.strip().lower()
    try:
        seconds = float(text)
    except ValueError:
        parts = _DURATION_PART.findall(text)
        if not parts or ''.join(n + u for n, u in parts) != text:
            raise argparse.ArgumentTypeError(f"invalid duration: {value!r}")
        seconds = sum(float(n) * _DURATION_UNITS[u] for n, u in parts)
    if not math.isfinite(seconds) or seconds <= 0:
        raise argparse.ArgumentTypeError(f"duration must be positive and finite: {value!r}")
    return seconds


def print_usage_instructions(bundle_path: Path, host: str):
    abs_path = os.path.abspath(bundle_path)
    print("\nUsage with curl:")
    print(f"  curl --cacert {bundle_path} https://{host}/")
    print(f"  curl --capath . https://{host}/")
    print("\nUsage with environment variables:")
    print(f"  export SSL_CERT_FILE='{abs_path}'")
    print(f"  export REQUESTS_CA_BUNDLE='{abs_path}'")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='sslcerts',
        description='Save the certificate chain presented by a TLS endpoint',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Creates a certificate bundle file (<host>_bundle.pem) containing all certificates
in the chain that can be used with curl, wget, and other SSL/TLS clients.

Target formats:
  host                  port 443, direct TLS
  host:port             direct TLS on port
  host:smtp             named STARTTLS service (smtp, imap, pop3)
  protocol://host[:port]  https, tls, smtp, imap, pop3

Examples:
  %(prog)s example.com
  %(prog)s example.com:443
  %(prog)s https://github.com
  %(prog)s smtp://smtp.gmail.com:587
  %(prog)s --insecure self-signed.example.com
"""
    )
    parser.add_argument('target', nargs='?', help='Target server')
    parser.add_argument('--target', dest='target_opt', metavar='TARGET',
                        help='Target server (alternative to the positional argument)')
    parser.add_argument('-k', '--insecure', action='store_true',
                        help='Skip certificate verification')
    parser.add_argument('-t', '--timeout', type=parse_duration, default=DEFAULT_TIMEOUT,
                        help='Connection timeout, e.g. 10s, 500ms (default: 10s)')
    parser.add_argument('-o', '--output-dir', default='.',
                        help='Directory for the bundle and .crt files (default: .)')
    parser.add_argument('-v', '--verbose', action='count', default=0,
                        help='Verbose output (-vv for the STARTTLS transcript)')
    parser.add_argument('-q', '--quiet', action='store_true',
                        help='Do not print usage instructions')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format='%(levelname)s: %(message)s', stream=sys.stderr)

    target = args.target or args.target_opt
    if not target:
        parser.print_help(sys.stderr)
        return 1

    try:
        resolved = parse_target(target)
        result = fetch_certificates(resolved, timeout=args.timeout, verify=not args.insecure,
                                    output_dir=args.output_dir)
    except SSLCertsError as e:
        print(f"{color('Error:', Colors.RED, sys.stderr)} {e}", file=sys.stderr)
        return 1

    print(f"{color('Created certificate bundle:', Colors.GREEN)} {result.bundle_path}")
    print(f"Bundle contains {result.count} certificate(s)")
    for path in result.written:
        print(f"Saving individual cert: {path}")

    if not args.quiet:
        print_usage_instructions(result.bundle_path, resolved.host)

    return 0


if __name__ == '__main__':
    sys.exit(main())
