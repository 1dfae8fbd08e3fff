"""
Email Auth Inspector — DNS Resolver Adapter
Wraps TXT / MX / address queries with a bounded timeout and retry policy.
"""

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

import dns.exception
import dns.name
import dns.resolver
import dns.reversename
from dkim.util import InvalidTagValueList, parse_tag_value

from config import DNSConfig
from errors import CheckError, Deadline, ErrorKind

logger = logging.getLogger(__name__)


class RecordType(Enum):
    SPF = "SPF"
    DKIM = "DKIM"
    DMARC = "DMARC"


@dataclass(frozen=True)
class DomainRecord:
    """A raw authentication record as it was published at fetch time."""
    domain: str
    record_type: RecordType
    raw_text: str
    fetched_at: datetime

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "record_type": self.record_type.value,
            "raw_text": self.raw_text,
            "fetched_at": self.fetched_at.isoformat(),
        }


def normalize_name(name: str) -> str:
    return name.strip().rstrip(".").lower()


class DNSResolver:
    """
    Resolver adapter used by every evaluator.

    NXDOMAIN raises CheckError(NXDOMAIN); a name that exists but carries no
    record of the requested type yields an empty collection.
    """

    def __init__(self, config: Optional[DNSConfig] = None):
        self.config = config or DNSConfig()
        self._resolver = dns.resolver.Resolver(configure=not self.config.nameservers)
        if self.config.nameservers:
            self._resolver.nameservers = list(self.config.nameservers)
        self._resolver.timeout = self.config.timeout
        self._resolver.lifetime = self.config.timeout

    def _query(self, name: str, rdtype: str, deadline: Optional[Deadline] = None):
        name = normalize_name(name)
        attempt = 0
        while True:
            lifetime = self.config.timeout
            if deadline is not None:
                lifetime = deadline.clamp(lifetime)
                if lifetime <= 0:
                    raise CheckError(ErrorKind.DNS_TIMEOUT, f"deadline expired before {rdtype} {name}", name)
            try:
                return self._resolver.resolve(name, rdtype, lifetime=lifetime, search=False)
            except dns.resolver.NXDOMAIN:
                raise CheckError(ErrorKind.NXDOMAIN, f"{name} does not exist", name)
            except dns.resolver.NoAnswer:
                return None
            except (dns.name.EmptyLabel, dns.name.LabelTooLong, dns.name.NameTooLong) as e:
                raise CheckError(ErrorKind.NXDOMAIN, f"invalid domain name '{name}': {e}", name)
            except (dns.exception.Timeout, dns.resolver.NoNameservers) as e:
                if attempt >= self.config.retries:
                    raise CheckError(
                        ErrorKind.DNS_TIMEOUT,
                        f"{rdtype} lookup for {name} failed after {attempt + 1} attempts: {e}",
                        name,
                    )
                delay = self.config.backoff * (2 ** attempt)
                if deadline is not None:
                    delay = min(delay, deadline.remaining())
                logger.debug("%s %s attempt %d failed (%s), retrying in %.2fs", rdtype, name, attempt + 1, e, delay)
                time.sleep(delay)
                attempt += 1

    def fetch_txt(self, name: str, deadline: Optional[Deadline] = None) -> Set[str]:
        """Returns every TXT string at name; multi-string records are concatenated."""
        answers = self._query(name, "TXT", deadline)
        if answers is None:
            return set()
        records = set()
        for rdata in answers:
            records.add(b"".join(rdata.strings).decode("utf-8", errors="replace"))
        return records

    def fetch_mx(self, domain: str, deadline: Optional[Deadline] = None) -> List[Tuple[int, str]]:
        """Returns (priority, host) pairs, highest priority (lowest value) first."""
        answers = self._query(domain, "MX", deadline)
        if answers is None:
            return []
        return sorted(
            [(r.preference, str(r.exchange).rstrip(".").lower()) for r in answers],
            key=lambda x: (x[0], x[1])
        )

    def fetch_addresses(self, name: str, deadline: Optional[Deadline] = None) -> List[str]:
        """Returns the A then AAAA addresses of name."""
        addresses = []
        for rdtype in ("A", "AAAA"):
            answers = self._query(name, rdtype, deadline)
            if answers is not None:
                addresses.extend(r.address for r in answers)
        return addresses

    def fetch_ptr(self, address: str, deadline: Optional[Deadline] = None) -> List[str]:
        """Returns the reverse DNS names of an IP address."""
        rev = dns.reversename.from_address(address).to_text()
        try:
            answers = self._query(rev, "PTR", deadline)
        except CheckError as e:
            if e.kind == ErrorKind.NXDOMAIN:
                return []
            raise
        if answers is None:
            return []
        return [str(r.target).rstrip(".").lower() for r in answers]

    def fetch_record(self, name: str, record_type: RecordType, prefix: str,
                     deadline: Optional[Deadline] = None) -> List[DomainRecord]:
        """Returns the TXT records at name that start with the given version tag."""
        fetched_at = datetime.now(timezone.utc)
        matches = []
        tag = re.compile(re.escape(prefix) + r"(\s|;|$)", re.IGNORECASE)
        for txt in self.fetch_txt(name, deadline):
            if tag.match(txt.strip()):
                matches.append(DomainRecord(normalize_name(name), record_type, txt.strip(), fetched_at))
        logger.debug("%s records at %s: %d", record_type.value, name, len(matches))
        return sorted(matches, key=lambda r: r.raw_text)


def parse_tag_list(text: str) -> Dict[str, str]:
    """
    Parses a DKIM / DMARC style "tag=value; tag=value" list (RFC 6376 §3.2)
    with dkimpy. Tag names are lowercased.

    Raises ValueError for a malformed list, including a repeated tag.
    """
    try:
        tags = parse_tag_value(text.encode("utf-8"))
    except InvalidTagValueList as e:
        raise ValueError(f"malformed tag list: {e!r}")
    parsed = {}
    for name, value in tags.items():
        name = name.decode("ascii", errors="replace").lower()
        if name in parsed:
            raise ValueError(f"malformed tag list: repeated tag {name!r}")
        parsed[name] = value.decode("utf-8", errors="replace")
    return parsed
