"""
Tests for the SMTP capability prober against local aiosmtpd servers.
"""

import socket
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from config import SMTPProbeConfig
from errors import ErrorKind
from smtp_probe import ProbeState, SMTPProber, inspect_certificate, probe_smtp

from conftest import free_port


def fast_config(**overrides):
    cfg = SMTPProbeConfig(timeout=2.0, ehlo_name="checker.test", try_starttls=True)
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return cfg


class TestProbe:

    def test_plain_server_capabilities(self, smtp_server):
        result = probe_smtp(smtp_server.hostname, smtp_server.port, config=fast_config())
        assert result.connected
        assert result.banner
        assert result.error_kind is None
        assert not result.starttls_supported
        assert "PLAIN" in result.auth_methods and "LOGIN" in result.auth_methods
        assert result.tls_info is None
        assert result.states == (
            ProbeState.DISCONNECTED, ProbeState.CONNECTING, ProbeState.CONNECTED,
            ProbeState.EHLO_SENT, ProbeState.CLOSED,
        )
        out = result.to_dict()
        assert out["connection_successful"] is True
        assert out["ehlo_response"]
        assert out["security_analysis"] is None

    def test_auth_success_uses_strongest_mutual_mechanism(self, smtp_server):
        result = probe_smtp(smtp_server.hostname, smtp_server.port, test_auth=True,
                            username="alice", password="s3cret", config=fast_config())
        assert result.auth_tested
        assert result.auth_successful
        assert result.auth_method == "PLAIN"
        assert ProbeState.AUTH_PROBING in result.states

    def test_auth_failure(self, smtp_server):
        result = probe_smtp(smtp_server.hostname, smtp_server.port, test_auth=True,
                            username="alice", password="wrong", config=fast_config())
        assert result.auth_tested
        assert not result.auth_successful
        assert result.error_kind == ErrorKind.AUTHENTICATION_FAILED
        assert result.states[-1] == ProbeState.CLOSED

    def test_password_never_reaches_result_or_logs(self, smtp_server, caplog):
        caplog.set_level("DEBUG")
        result = probe_smtp(smtp_server.hostname, smtp_server.port, test_auth=True,
                            username="alice", password="wrong", config=fast_config())
        assert "wrong" not in str(result.to_dict())
        assert "wrong" not in caplog.text

    def test_failed_starttls_stops_before_auth(self, broken_tls_server):
        result = probe_smtp(broken_tls_server.hostname, broken_tls_server.port, test_auth=True,
                            username="alice", password="s3cret", config=fast_config())
        assert result.connected
        assert result.starttls_supported
        assert result.error_kind == ErrorKind.TLS_NEGOTIATION_FAILED
        assert result.error_message
        assert not result.auth_tested
        assert ProbeState.AUTH_PROBING not in result.states
        assert ProbeState.STARTTLS_NEGOTIATING in result.states
        assert ProbeState.TLS_ESTABLISHED not in result.states
        assert result.states[-1] == ProbeState.CLOSED

    def test_connection_refused(self):
        result = probe_smtp("127.0.0.1", free_port(), config=fast_config())
        assert not result.connected
        assert result.error_kind == ErrorKind.CONNECTION_REFUSED
        assert result.to_dict()["connection_successful"] is False

    def test_silent_server_times_out(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as listener:
            listener.bind(("127.0.0.1", 0))
            listener.listen(1)
            port = listener.getsockname()[1]
            result = probe_smtp("127.0.0.1", port, config=fast_config(timeout=0.5))
        assert not result.connected
        assert result.error_kind == ErrorKind.TIMEOUT

    def test_auth_requires_credentials(self):
        with pytest.raises(ValueError):
            SMTPProber(fast_config()).probe("127.0.0.1", 25, test_auth=True)

    def test_closes_connection_on_unexpected_error(self, smtp_server):
        with patch("smtplib.SMTP.ehlo", side_effect=OSError("boom")), \
                patch("smtplib.SMTP.close") as close:
            result = probe_smtp(smtp_server.hostname, smtp_server.port, config=fast_config())
        assert result.connected
        assert result.error_kind == ErrorKind.PROTOCOL_VIOLATION
        assert result.states[-1] == ProbeState.CLOSED
        assert close.called

    def test_failed_starttls_closes_without_quit(self, broken_tls_server):
        with patch("smtplib.SMTP.quit") as quit_:
            result = probe_smtp(broken_tls_server.hostname, broken_tls_server.port, config=fast_config())
        assert result.error_kind == ErrorKind.TLS_NEGOTIATION_FAILED
        assert not quit_.called
        assert result.states[-1] == ProbeState.CLOSED

    def test_blank_server_is_rejected(self):
        with pytest.raises(ValueError):
            SMTPProber(fast_config()).probe("  ", 25)

    def test_missing_port_is_rejected(self):
        with pytest.raises(ValueError):
            SMTPProber(fast_config()).probe("127.0.0.1", None)


class TestTLS:

    def test_starttls_then_auth(self, tls_server):
        result = probe_smtp(tls_server.hostname, tls_server.port, test_auth=True,
                            username="alice", password="s3cret", config=fast_config())
        assert result.error_kind is None, result.error_message
        assert result.starttls_supported
        assert result.states == (
            ProbeState.DISCONNECTED, ProbeState.CONNECTING, ProbeState.CONNECTED, ProbeState.EHLO_SENT,
            ProbeState.STARTTLS_NEGOTIATING, ProbeState.TLS_ESTABLISHED, ProbeState.AUTH_PROBING,
            ProbeState.CLOSED,
        )
        assert result.auth_successful
        assert result.auth_method == "PLAIN"

    def test_tls_details_are_reported(self, tls_server):
        result = probe_smtp(tls_server.hostname, tls_server.port, config=fast_config())
        info = result.tls_info
        assert info is not None
        assert info.version.startswith("TLS")
        assert info.cipher_suite
        assert info.cert_subject == "CN=mail.test"
        assert not info.cert_valid
        assert "certificate is self-signed" in info.cert_problems
        assert "certificate does not cover 127.0.0.1" in info.cert_problems
        out = result.to_dict()["security_analysis"]
        assert out["certificate_valid"] is False
        assert out["tls_version"] == info.version

    def test_second_ehlo_reveals_auth(self, tls_server):
        result = probe_smtp(tls_server.hostname, tls_server.port, config=fast_config())
        # AUTH only appears after STARTTLS
        assert result.starttls_required
        assert "PLAIN" in result.auth_methods
        assert any(line.startswith("AUTH") for line in result.ehlo_lines)
        assert not any(line.startswith("STARTTLS") for line in result.ehlo_lines)

    def test_starttls_disabled_leaves_session_plain(self, tls_server):
        result = probe_smtp(tls_server.hostname, tls_server.port, config=fast_config(try_starttls=False))
        assert result.starttls_supported
        assert result.tls_info is None
        assert result.auth_methods == ()
        assert ProbeState.STARTTLS_NEGOTIATING not in result.states

    def test_implicit_tls(self, implicit_tls_server):
        port = implicit_tls_server.port
        result = probe_smtp(implicit_tls_server.hostname, port, test_auth=True, username="alice",
                            password="s3cret", config=fast_config(implicit_tls_ports=(port,)))
        assert result.error_kind is None, result.error_message
        assert result.implicit_tls
        assert result.connected
        assert result.tls_info is not None and result.tls_info.version.startswith("TLS")
        assert "certificate is self-signed" in result.tls_info.cert_problems
        assert not result.starttls_supported
        assert ProbeState.TLS_ESTABLISHED in result.states
        assert ProbeState.STARTTLS_NEGOTIATING not in result.states
        assert result.auth_successful
        assert result.to_dict()["implicit_tls"] is True


def make_certificate(hostname, issuer_name=None, days=30, start=None):
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name)]) if issuer_name else subject
    start = start or datetime.now(timezone.utc) - timedelta(days=1)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(start)
        .not_valid_after(start + timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(Encoding.DER)


class TestCertificateInspection:

    def test_valid_certificate(self):
        valid, issuer, _, expires, problems = inspect_certificate(
            make_certificate("mx.example.com", issuer_name="Example CA"), "mx.example.com"
        )
        assert valid
        assert issuer == "CN=Example CA"
        assert problems == []
        assert expires > datetime.now(timezone.utc)

    def test_wildcard_covers_single_label(self):
        der = make_certificate("*.example.com", issuer_name="Example CA")
        assert inspect_certificate(der, "mx.example.com")[0]
        assert not inspect_certificate(der, "a.mx.example.com")[0]

    def test_self_signed_and_expired(self):
        der = make_certificate("mx.example.com", days=1, start=datetime(2020, 1, 1, tzinfo=timezone.utc))
        valid, _, _, _, problems = inspect_certificate(der, "mx.example.com")
        assert not valid
        assert "certificate has expired" in problems
        assert "certificate is self-signed" in problems

    def test_hostname_mismatch(self):
        der = make_certificate("other.example.org", issuer_name="Example CA")
        valid, _, _, _, problems = inspect_certificate(der, "mx.example.com")
        assert not valid
        assert problems == ["certificate does not cover mx.example.com"]
