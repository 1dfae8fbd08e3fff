"""
Email Auth Inspector — SMTP Capability Prober
Connects to a mail server, reads the banner and EHLO capabilities, tries
STARTTLS and optionally one AUTH exchange. No MAIL FROM is ever sent.
"""

import logging
import smtplib
import socket
import ssl
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from cryptography import x509
from cryptography.x509.oid import ExtensionOID, NameOID

from config import SMTPProbeConfig
from errors import CheckError, Deadline, ErrorKind

logger = logging.getLogger(__name__)

AUTH_PREFERENCE = ("CRAM-MD5", "PLAIN", "LOGIN")


class ProbeState(Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    EHLO_SENT = "EHLOSent"
    STARTTLS_NEGOTIATING = "STARTTLSNegotiating"
    TLS_ESTABLISHED = "TLSEstablished"
    AUTH_PROBING = "AuthProbing"
    CLOSED = "Closed"


@dataclass(frozen=True)
class TLSInfo:
    version: str
    cipher_suite: str
    cert_valid: bool
    cert_issuer: str = ""
    cert_subject: str = ""
    cert_expires_at: Optional[datetime] = None
    cert_problems: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "tls_version": self.version,
            "cipher_suite": self.cipher_suite,
            "certificate_valid": self.cert_valid,
            "certificate_issuer": self.cert_issuer,
            "certificate_subject": self.cert_subject,
            "certificate_expires": self.cert_expires_at.isoformat() if self.cert_expires_at else None,
            "certificate_problems": list(self.cert_problems),
        }


@dataclass(frozen=True)
class SMTPProbeResult:
    server: str
    port: int
    connected: bool
    banner: str = ""
    ehlo_lines: Tuple[str, ...] = ()
    starttls_supported: bool = False
    starttls_required: bool = False
    auth_methods: Tuple[str, ...] = ()
    size_limit: Optional[int] = None
    response_time_ms: Optional[float] = None
    tls_info: Optional[TLSInfo] = None
    implicit_tls: bool = False
    auth_tested: bool = False
    auth_successful: bool = False
    auth_method: Optional[str] = None
    states: Tuple[ProbeState, ...] = ()
    warnings: Tuple[str, ...] = ()
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "server": self.server,
            "port": self.port,
            "connected": self.connected,
            "connection_successful": self.connected,
            "response_time": round(self.response_time_ms) if self.response_time_ms is not None else None,
            "server_banner": self.banner,
            "ehlo_response": list(self.ehlo_lines),
            "starttls_supported": self.starttls_supported,
            "starttls_required": self.starttls_required,
            "implicit_tls": self.implicit_tls,
            "auth_methods": list(self.auth_methods),
            "size_limit": self.size_limit,
            "security_analysis": self.tls_info.to_dict() if self.tls_info else None,
            "auth_test": {
                "tested": self.auth_tested,
                "successful": self.auth_successful,
                "method": self.auth_method,
            },
            "states": [s.value for s in self.states],
            "warnings": list(self.warnings),
            "error": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
        }


def _hostname_matches(hostname: str, names: List[str]) -> bool:
    hostname = hostname.lower().rstrip(".")
    for name in names:
        name = name.lower().rstrip(".")
        if name == hostname:
            return True
        if name.startswith("*.") and "." in hostname:
            if hostname.split(".", 1)[1] == name[2:]:
                return True
    return False


def inspect_certificate(der: bytes, hostname: str, now: Optional[datetime] = None) -> Tuple[bool, str, str, datetime, List[str]]:
    """
    Returns (valid, issuer, subject, expires_at, problems) for a DER peer
    certificate. Valid means: inside its validity window, covering hostname,
    and not self-issued.
    """
    now = now or datetime.now(timezone.utc)
    cert = x509.load_der_x509_certificate(der)
    problems = []
    if now < cert.not_valid_before_utc:
        problems.append("certificate is not yet valid")
    if now > cert.not_valid_after_utc:
        problems.append("certificate has expired")

    try:
        san = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        names = san.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        names = [a.value for a in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)]
    if not _hostname_matches(hostname, names):
        problems.append(f"certificate does not cover {hostname}")
    if cert.issuer == cert.subject:
        problems.append("certificate is self-signed")

    return (not problems, cert.issuer.rfc4514_string(), cert.subject.rfc4514_string(),
            cert.not_valid_after_utc, problems)


class SMTPProber:
    """
    One probe per call; nothing is shared between probes.

    The TLS context does not verify the peer: the handshake is allowed to
    complete so the certificate can be inspected and reported instead.
    """

    def __init__(self, config: Optional[SMTPProbeConfig] = None):
        self.config = config or SMTPProbeConfig()

    def _tls_context(self) -> ssl.SSLContext:
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        return ctx

    def _timeout(self, deadline: Optional[Deadline], what: str) -> float:
        if deadline is None:
            return self.config.timeout
        deadline.check(what)
        return deadline.clamp(self.config.timeout)

    def _tls_info(self, smtp: smtplib.SMTP, server: str) -> TLSInfo:
        sock = smtp.sock
        cipher = sock.cipher()
        der = sock.getpeercert(binary_form=True)
        if not der:
            return TLSInfo(sock.version() or "", cipher[0] if cipher else "", False,
                           cert_problems=("server presented no certificate",))
        try:
            valid, issuer, subject, expires, problems = inspect_certificate(der, server)
        except ValueError as e:
            return TLSInfo(sock.version() or "", cipher[0] if cipher else "", False,
                           cert_problems=(f"unparseable certificate: {e}",))
        return TLSInfo(
            version=sock.version() or "",
            cipher_suite=cipher[0] if cipher else "",
            cert_valid=valid,
            cert_issuer=issuer,
            cert_subject=subject,
            cert_expires_at=expires,
            cert_problems=tuple(problems),
        )

    def probe(self, server: str, port: int = 25, test_auth: bool = False, username: Optional[str] = None,
              password: Optional[str] = None, deadline: Optional[Deadline] = None) -> SMTPProbeResult:
        if test_auth and not (username and password):
            raise ValueError("username and password are required to test authentication")
        if not server or not str(server).strip():
            raise ValueError("server is required")
        server = str(server).strip()
        try:
            port = int(port)
        except (TypeError, ValueError):
            raise ValueError(f"invalid port {port!r}")
        if not 0 < port < 65536:
            raise ValueError(f"invalid port {port}")

        implicit_tls = port in self.config.implicit_tls_ports
        states = [ProbeState.DISCONNECTED]
        warnings = []
        r = {
            "connected": False, "banner": "", "ehlo_lines": (), "starttls_supported": False,
            "starttls_required": False, "auth_methods": (), "size_limit": None, "response_time_ms": None,
            "tls_info": None, "auth_tested": False, "auth_successful": False, "auth_method": None,
            "error_kind": None, "error_message": None,
        }

        if implicit_tls:
            smtp = smtplib.SMTP_SSL(local_hostname=self.config.ehlo_name, context=self._tls_context(),
                                    timeout=self.config.timeout)
        else:
            smtp = smtplib.SMTP(local_hostname=self.config.ehlo_name, timeout=self.config.timeout)
        # connect() leaves _host unset; starttls() and SMTP_SSL use it as the SNI name
        smtp._host = server

        tls_failed = False
        try:
            states.append(ProbeState.CONNECTING)
            smtp.timeout = self._timeout(deadline, "connect")
            started = time.monotonic()
            try:
                code, banner = smtp.connect(server, port)
            except ConnectionRefusedError as e:
                raise CheckError(ErrorKind.CONNECTION_REFUSED, f"{server}:{port} refused the connection: {e}")
            except socket.gaierror as e:
                raise CheckError(ErrorKind.CONNECTION_REFUSED, f"cannot resolve {server}: {e}")
            except (socket.timeout, TimeoutError):
                raise CheckError(ErrorKind.TIMEOUT, f"no answer from {server}:{port} within {smtp.timeout:g}s")
            except ssl.SSLError as e:
                tls_failed = True
                raise CheckError(ErrorKind.TLS_NEGOTIATION_FAILED, f"implicit TLS handshake failed: {e}")
            except smtplib.SMTPServerDisconnected as e:
                # smtplib reports a banner read timeout as a disconnect
                if "timed out" in str(e):
                    raise CheckError(ErrorKind.TIMEOUT, f"no banner from {server}:{port} within {smtp.timeout:g}s")
                raise CheckError(ErrorKind.PROTOCOL_VIOLATION, f"server closed the connection before the banner: {e}")

            r["response_time_ms"] = (time.monotonic() - started) * 1000
            r["connected"] = True
            r["banner"] = banner.decode("utf-8", errors="replace")
            states.append(ProbeState.CONNECTED)
            if code != 220:
                warnings.append(f"ProtocolViolation: banner reply {code} is not 220")
                logger.warning("%s:%d banner reply %d is not 220", server, port, code)

            if implicit_tls:
                r["tls_info"] = self._tls_info(smtp, server)

            smtp.sock.settimeout(self._timeout(deadline, "EHLO"))
            code, reply = smtp.ehlo()
            states.append(ProbeState.EHLO_SENT)
            r["ehlo_lines"] = tuple(reply.decode("utf-8", errors="replace").splitlines())
            if code != 250:
                warnings.append(f"ProtocolViolation: EHLO reply {code}")
            plain_features = dict(smtp.esmtp_features)
            r["starttls_supported"] = "starttls" in plain_features
            r["auth_methods"] = tuple(plain_features.get("auth", "").upper().split())
            if plain_features.get("size", "").isdigit():
                r["size_limit"] = int(plain_features["size"])

            if r["starttls_supported"] and not implicit_tls and self.config.try_starttls:
                states.append(ProbeState.STARTTLS_NEGOTIATING)
                smtp.sock.settimeout(self._timeout(deadline, "STARTTLS"))
                try:
                    smtp.starttls(context=self._tls_context())
                except (smtplib.SMTPException, ssl.SSLError, OSError, ValueError) as e:
                    tls_failed = True
                    raise CheckError(ErrorKind.TLS_NEGOTIATION_FAILED, f"STARTTLS failed: {e}")
                states.append(ProbeState.TLS_ESTABLISHED)
                r["tls_info"] = self._tls_info(smtp, server)

                smtp.sock.settimeout(self._timeout(deadline, "EHLO"))
                code, reply = smtp.ehlo()
                r["ehlo_lines"] = tuple(reply.decode("utf-8", errors="replace").splitlines())
                tls_auth = tuple(smtp.esmtp_features.get("auth", "").upper().split())
                if tls_auth and "auth" not in plain_features:
                    r["starttls_required"] = True
                r["auth_methods"] = tls_auth or r["auth_methods"]
                if smtp.esmtp_features.get("size", "").isdigit():
                    r["size_limit"] = int(smtp.esmtp_features["size"])
            elif implicit_tls:
                states.append(ProbeState.TLS_ESTABLISHED)

            if test_auth:
                states.append(ProbeState.AUTH_PROBING)
                self._try_auth(smtp, r, username, password, deadline)

        except CheckError as e:
            r["error_kind"], r["error_message"] = e.kind, e.message
            logger.info("SMTP probe %s:%d stopped: %s", server, port, e)
        except (smtplib.SMTPException, OSError) as e:
            kind = ErrorKind.TIMEOUT if isinstance(e, (socket.timeout, TimeoutError)) else ErrorKind.PROTOCOL_VIOLATION
            r["error_kind"], r["error_message"] = kind, f"{type(e).__name__}: {e}"
            logger.info("SMTP probe %s:%d failed: %s", server, port, r["error_message"])
        finally:
            self._close(smtp, send_quit=not tls_failed)
            states.append(ProbeState.CLOSED)

        return SMTPProbeResult(
            server=server,
            port=port,
            implicit_tls=implicit_tls,
            states=tuple(states),
            warnings=tuple(warnings),
            **r,
        )

    def _try_auth(self, smtp: smtplib.SMTP, r: dict, username: str, password: str,
                  deadline: Optional[Deadline]) -> None:
        mechanism = next((m for m in AUTH_PREFERENCE if m in r["auth_methods"]), None)
        if mechanism is None:
            raise CheckError(
                ErrorKind.AUTHENTICATION_FAILED,
                "server advertises no supported AUTH mechanism" if r["auth_methods"]
                else "server does not advertise AUTH",
            )
        handlers = {"CRAM-MD5": smtp.auth_cram_md5, "PLAIN": smtp.auth_plain, "LOGIN": smtp.auth_login}
        smtp.user, smtp.password = username, password
        r["auth_tested"], r["auth_method"] = True, mechanism
        smtp.sock.settimeout(self._timeout(deadline, "AUTH"))
        try:
            smtp.auth(mechanism, handlers[mechanism])
        except smtplib.SMTPAuthenticationError as e:
            raise CheckError(ErrorKind.AUTHENTICATION_FAILED, f"{mechanism} rejected ({e.smtp_code})")
        finally:
            smtp.password = None
        r["auth_successful"] = True
        logger.info("AUTH %s accepted for user %s", mechanism, username)

    def _close(self, smtp: smtplib.SMTP, send_quit: bool = True) -> None:
        """Sends QUIT unless the session is unusable, e.g. after a failed TLS handshake."""
        if smtp.sock is None:
            return
        if not send_quit:
            smtp.close()
            return
        try:
            smtp.quit()
        except (smtplib.SMTPException, OSError):
            smtp.close()


def probe_smtp(server: str, port: int = 25, test_auth: bool = False, username: Optional[str] = None,
               password: Optional[str] = None, config: Optional[SMTPProbeConfig] = None,
               deadline: Optional[Deadline] = None) -> SMTPProbeResult:
    return SMTPProber(config).probe(server, port, test_auth, username, password, deadline)
