"""
Pytest configuration and fixtures for all tests.
"""

import base64
import hashlib
import os
import socket
import ssl
import sys
from datetime import datetime, timedelta, timezone

import pytest
from aiosmtpd.controller import Controller
from aiosmtpd.handlers import Sink
from aiosmtpd.smtp import SMTP as SMTPServer
from aiosmtpd.smtp import AuthResult, syntax
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID

# Project modules live at the repository root
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Keep tests independent of any local .env
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from config import DNSConfig, setup_logging  # noqa: E402
from dkim_check import _header_hash_input, canonicalize_body, parse_signature, split_message  # noqa: E402
from dns_resolver import DNSResolver, normalize_name  # noqa: E402
from errors import CheckError, ErrorKind  # noqa: E402

setup_logging()


class FakeResolver(DNSResolver):
    """In-memory zone; records every name it is asked about."""

    def __init__(self, txt=None, mx=None, addresses=None, ptr=None, nxdomain=(), timeouts=()):
        self.config = DNSConfig(timeout=1.0, retries=0, backoff=0.0, nameservers=[])
        self.txt = {normalize_name(k): [v] if isinstance(v, str) else list(v) for k, v in (txt or {}).items()}
        self.mx = {normalize_name(k): list(v) for k, v in (mx or {}).items()}
        self.addresses = {normalize_name(k): list(v) for k, v in (addresses or {}).items()}
        self.ptr = dict(ptr or {})
        self.nxdomain = {normalize_name(n) for n in nxdomain}
        self.timeouts = {normalize_name(n) for n in timeouts}
        self.queries = []

    def _lookup(self, name):
        name = normalize_name(name)
        self.queries.append(name)
        if name in self.timeouts:
            raise CheckError(ErrorKind.DNS_TIMEOUT, f"lookup for {name} timed out", name)
        if name in self.nxdomain:
            raise CheckError(ErrorKind.NXDOMAIN, f"{name} does not exist", name)
        return name

    def fetch_txt(self, name, deadline=None):
        return set(self.txt.get(self._lookup(name), []))

    def fetch_mx(self, domain, deadline=None):
        return sorted(self.mx.get(self._lookup(domain), []))

    def fetch_addresses(self, name, deadline=None):
        return list(self.addresses.get(self._lookup(name), []))

    def fetch_ptr(self, address, deadline=None):
        self.queries.append(address)
        return list(self.ptr.get(address, []))


@pytest.fixture
def make_resolver():
    """Factory for an in-memory resolver: make_resolver(txt={...}, mx={...})."""
    return FakeResolver


@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def dkim_key_record(private_key, extra: str = "") -> str:
    der = private_key.public_key().public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return f"v=DKIM1; k=rsa; {extra}p={base64.b64encode(der).decode()}"


def sign_message(message: bytes, private_key, domain: str, selector: str,
                 signed=("from", "to", "subject", "date"), canon: str = "relaxed/relaxed",
                 expires: int = None) -> bytes:
    """Prepends an rsa-sha256 DKIM-Signature to message."""
    header_canon, body_canon = canon.split("/")
    fields, body = split_message(message)
    bh = base64.b64encode(hashlib.sha256(canonicalize_body(body, body_canon)).digest()).decode()
    tags = f" v=1; a=rsa-sha256; c={canon}; d={domain}; s={selector};\r\n\th={':'.join(signed)}; bh={bh};"
    if expires is not None:
        tags += f" x={expires};"
    unsigned = (b"DKIM-Signature", f"{tags} b=\r\n".encode())
    data = _header_hash_input(parse_signature(unsigned), fields)
    signature = private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
    header = b"DKIM-Signature:" + unsigned[1][:-2] + base64.b64encode(signature) + b"\r\n"
    return header + b"".join(name + b":" + value for name, value in fields) + b"\r\n" + body


@pytest.fixture
def signed_message():
    return sign_message


@pytest.fixture
def key_record():
    return dkim_key_record


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class BrokenTLSServer(SMTPServer):
    """Advertises STARTTLS but refuses to start it."""

    @syntax("STARTTLS", when="tls_context")
    async def smtp_STARTTLS(self, arg):
        await self.push("454 4.7.0 TLS not available due to temporary reason")


class BrokenTLSController(Controller):
    def factory(self):
        return BrokenTLSServer(self.handler, **self.SMTP_kwargs)


def _authenticator(server, session, envelope, mechanism, auth_data):
    return AuthResult(success=auth_data.login == b"alice" and auth_data.password == b"s3cret", handled=False)


@pytest.fixture
def smtp_server():
    """Local SMTP server on 127.0.0.1 that accepts AUTH PLAIN/LOGIN for alice / s3cret."""
    controller = Controller(
        Sink(), hostname="127.0.0.1", port=free_port(),
        authenticator=_authenticator, auth_require_tls=False,
    )
    controller.start()
    yield controller
    controller.stop()


@pytest.fixture
def broken_tls_server():
    """Local SMTP server whose STARTTLS always fails with 454."""
    controller = BrokenTLSController(
        Sink(), hostname="127.0.0.1", port=free_port(),
        tls_context=ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER),
        authenticator=_authenticator, auth_require_tls=False,
    )
    controller.start()
    yield controller
    controller.stop()


@pytest.fixture(scope="session")
def server_tls_context(tmp_path_factory):
    """Server-side TLS context holding a fresh self-signed certificate for mail.test."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "mail.test")])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName("mail.test")]), critical=False)
        .sign(key, hashes.SHA256())
    )
    directory = tmp_path_factory.mktemp("tls")
    cert_file, key_file = directory / "cert.pem", directory / "key.pem"
    cert_file.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_file.write_bytes(key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.TraditionalOpenSSL, serialization.NoEncryption()
    ))
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(str(cert_file), str(key_file))
    return context


@pytest.fixture
def tls_server(server_tls_context):
    """SMTP server offering STARTTLS that only advertises AUTH once TLS is up."""
    controller = Controller(
        Sink(), hostname="127.0.0.1", port=free_port(),
        tls_context=server_tls_context,
        authenticator=_authenticator, auth_require_tls=True,
    )
    controller.start()
    yield controller
    controller.stop()


@pytest.fixture
def implicit_tls_server(server_tls_context):
    """SMTP server that speaks TLS from the first byte, as on port 465."""
    controller = Controller(
        Sink(), hostname="127.0.0.1", port=free_port(),
        ssl_context=server_tls_context,
        authenticator=_authenticator, auth_require_tls=False,
    )
    controller.start()
    yield controller
    controller.stop()
