"""
Email Auth Inspector — Configuration
All variables are loaded from the .env file.
"""

import logging
import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

load_dotenv()


def _bool(key: str, default: bool) -> bool:
    val = os.getenv(key, str(default)).lower()
    return val in ("true", "1", "yes")


def _float(key: str, default: float) -> float:
    return float(os.getenv(key, str(default)))


@dataclass
class DNSConfig:
    """DNS resolver adapter settings."""
    timeout: float = field(default_factory=lambda: _float("DNS_TIMEOUT", 5.0))
    retries: int = field(default_factory=lambda: int(os.getenv("DNS_RETRIES", "2")))
    backoff: float = field(default_factory=lambda: _float("DNS_BACKOFF", 0.5))

    # Comma-separated list; empty means the system resolver configuration
    nameservers: list = field(default_factory=lambda: [
        ns.strip() for ns in os.getenv("DNS_NAMESERVERS", "").split(",") if ns.strip()
    ])

    def __post_init__(self):
        # At most 2 retries, whatever the environment says
        self.retries = max(0, min(self.retries, 2))


@dataclass
class SMTPProbeConfig:
    """SMTP capability probe settings."""
    timeout: float = field(default_factory=lambda: _float("SMTP_TIMEOUT", 10.0))
    ehlo_name: str = field(default_factory=lambda: os.getenv("SMTP_EHLO_NAME", "auth-inspector.local"))
    try_starttls: bool = field(default_factory=lambda: _bool("SMTP_TRY_STARTTLS", True))

    # Ports on which the server expects TLS from the first byte
    implicit_tls_ports: tuple = (465,)


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())
    format: str = field(default_factory=lambda: os.getenv(
        "LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))


def setup_logging(cfg: LoggingConfig = None) -> None:
    """Configures the root logger once from LOG_LEVEL / LOG_FORMAT."""
    cfg = cfg or LoggingConfig()
    level = getattr(logging, cfg.level, logging.INFO)
    logging.basicConfig(level=level, format=cfg.format)
    # basicConfig leaves the level alone when the root logger already has handlers
    logging.getLogger().setLevel(level)


@dataclass
class RequestConfig:
    """Per-request limits for the check_records entry points."""
    # Overall budget for every network call made while serving one request
    deadline: float = field(default_factory=lambda: _float("REQUEST_DEADLINE", 30.0))

    # Selectors tried by the DKIM discovery sweep
    dkim_selectors: list = field(default_factory=lambda: [
        s.strip() for s in os.getenv(
            "DKIM_SELECTORS", "default,google,mail,smtp,dkim,k1,selector1,selector2"
        ).split(",") if s.strip()
    ])
