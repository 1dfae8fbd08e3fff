"""
Email Auth Inspector — Error taxonomy
Every evaluator failure carries an ErrorKind so callers can render
"NOT FOUND" / "INVALID" instead of an opaque traceback.
"""

import time
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    DNS_TIMEOUT = "DNSTimeout"
    NXDOMAIN = "NXDOMAIN"
    NO_SPF_RECORD = "NoSPFRecord"
    MULTIPLE_SPF_RECORDS = "MultipleSPFRecords"
    SPF_LOOP = "SPFLoop"
    UNKNOWN_MECHANISM = "UnknownMechanism"
    NO_DKIM_RECORD = "NoDKIMRecord"
    MALFORMED_PUBLIC_KEY = "MalformedPublicKey"
    NO_DMARC_RECORD = "NoDMARCRecord"
    INVALID_DMARC_RECORD = "InvalidDMARCRecord"
    CONNECTION_REFUSED = "ConnectionRefused"
    TIMEOUT = "Timeout"
    PROTOCOL_VIOLATION = "ProtocolViolation"
    TLS_NEGOTIATION_FAILED = "TLSNegotiationFailed"
    AUTHENTICATION_FAILED = "AuthenticationFailed"

    @property
    def is_not_found(self) -> bool:
        return self in (
            ErrorKind.NXDOMAIN,
            ErrorKind.NO_SPF_RECORD,
            ErrorKind.NO_DKIM_RECORD,
            ErrorKind.NO_DMARC_RECORD,
        )


class CheckError(Exception):
    """Raised by an evaluator when its result cannot be produced."""

    def __init__(self, kind: ErrorKind, message: str, domain: Optional[str] = None):
        self.kind = kind
        self.message = message
        self.domain = domain
        Exception.__init__(self, message)

    def __str__(self):
        return f"{self.kind.value}: {self.message}"

    def to_dict(self) -> dict:
        return {"error": self.kind.value, "error_message": self.message}


class Deadline:
    """Overall time budget shared by every network call of one request."""

    def __init__(self, seconds: float, kind: ErrorKind = ErrorKind.TIMEOUT):
        self.expires_at = time.monotonic() + seconds
        self.kind = kind

    @classmethod
    def optional(cls, seconds: Optional[float], kind: ErrorKind = ErrorKind.TIMEOUT) -> Optional["Deadline"]:
        return cls(seconds, kind) if seconds is not None else None

    def remaining(self) -> float:
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def check(self, what: str) -> float:
        """Returns the remaining budget or raises once it is spent."""
        left = self.remaining()
        if left <= 0.0:
            raise CheckError(self.kind, f"deadline expired during {what}")
        return left

    def clamp(self, timeout: float) -> float:
        return min(timeout, self.remaining())
