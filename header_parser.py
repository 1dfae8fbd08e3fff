"""
Email Auth Inspector — Header Parser
Turns a raw header block into a structured authentication trail: summary,
Received routing, Authentication-Results / Received-SPF / DKIM-Signature
claims and transport security hints. Parsing never touches the network;
cross_check() does.
"""

import ipaddress
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from email import policy
from email.header import decode_header, make_header
from email.parser import HeaderParser
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from typing import Dict, List, Optional, Tuple

from dkim_check import evaluate_dkim
from dmarc_check import evaluate_dmarc
from dns_resolver import DNSResolver, parse_tag_list
from errors import CheckError, Deadline
from spf_check import evaluate_spf

logger = logging.getLogger(__name__)

ROUTING_ORDER = "most_recent_first"

_FOLD_RE = re.compile(r"\r?\n[ \t]+")
_IP_RE = re.compile(r"\[(?:IPv6:)?([0-9A-Fa-f:.]+)\]")
_BARE_IP_RE = re.compile(r"\b(\d{1,3}(?:\.\d{1,3}){3})\b")
_TLS_VERSION_RE = re.compile(r"\b(?:TLS|tls)[ _v]?(1)[._]([0-3])\b")
_RECEIVED_PARTS = {
    "from_host": re.compile(r"^\s*from\s+(\S+)", re.IGNORECASE),
    "by_host": re.compile(r"\bby\s+([^\s;()]+)", re.IGNORECASE),
    "with_protocol": re.compile(r"\bwith\s+([^\s;()]+)", re.IGNORECASE),
    "id": re.compile(r"\bid\s+([^\s;()]+)", re.IGNORECASE),
}
_SPAM_STATUS_SCORE_RE = re.compile(r"(?:score|hits)=(-?\d+(?:\.\d+)?)", re.IGNORECASE)
_KV_RE = re.compile(r"([\w.\-]+)=((?:\"[^\"]*\")|[^;\s]+)")


def _unfold(value: str) -> str:
    return _FOLD_RE.sub(" ", value or "").strip()


def _decode(value: str) -> str:
    """Decodes RFC 2047 encoded words; undecodable input is returned unchanged."""
    value = _unfold(value)
    try:
        return str(make_header(decode_header(value)))
    except (UnicodeDecodeError, LookupError, ValueError):
        return value


def _parse_date(value: str) -> Optional[datetime]:
    try:
        return parsedate_to_datetime(value.strip())
    except (TypeError, ValueError, IndexError):
        return None


def _domain_of(address: str) -> str:
    _, addr = parseaddr(address or "")
    return addr.rpartition("@")[2].strip().rstrip(".").lower() if "@" in addr else ""


def _split_outside_comments(value: str) -> List[str]:
    """Splits on ';' except inside parenthesized comments."""
    parts, depth, current = [], 0, []
    for ch in value:
        if ch == "(":
            depth += 1
        elif ch == ")" and depth:
            depth -= 1
        if ch == ";" and not depth:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return [p.strip() for p in parts if p.strip()]


def _comments(segment: str) -> Tuple[str, str]:
    """Returns (segment without comments, joined comment text)."""
    found = re.findall(r"\(([^()]*)\)", segment)
    return re.sub(r"\([^()]*\)", " ", segment), "; ".join(c.strip() for c in found)


def _tls_version(text: str) -> Optional[str]:
    m = _TLS_VERSION_RE.search(text)
    return f"TLS {m.group(1)}.{m.group(2)}" if m else None


@dataclass(frozen=True)
class EmailSummary:
    sender: str = ""
    to: str = ""
    subject: str = ""
    date: str = ""
    message_id: str = ""
    return_path: str = ""

    def to_dict(self) -> dict:
        return {
            "from": self.sender,
            "to": self.to,
            "subject": self.subject,
            "date": self.date,
            "messageId": self.message_id,
            "returnPath": self.return_path,
        }


@dataclass(frozen=True)
class RoutingHop:
    raw: str
    from_host: str = ""
    from_ip: str = ""
    by_host: str = ""
    with_protocol: str = ""
    id: str = ""
    timestamp: Optional[datetime] = None
    tls: bool = False
    tls_version: Optional[str] = None
    delay: Optional[float] = None

    @property
    def server(self) -> str:
        return self.by_host or self.from_host

    def to_dict(self) -> dict:
        return {
            "server": self.server,
            "ip": self.from_ip,
            "timestamp": self.timestamp.isoformat() if self.timestamp else "",
            "delay": f"{self.delay:g}s" if self.delay is not None else "",
            "from_host": self.from_host,
            "by_host": self.by_host,
            "with_protocol": self.with_protocol,
            "id": self.id,
            "tls": self.tls,
        }


def parse_received(value: str) -> RoutingHop:
    value = _unfold(value)
    stamp_text = value.rpartition(";")[2] if ";" in value else ""
    clauses = value.rpartition(";")[0] if ";" in value else value
    parts = {}
    stripped = _comments(clauses)[0]
    for name, pattern in _RECEIVED_PARTS.items():
        m = pattern.search(stripped)
        parts[name] = m.group(1).strip("[]") if m else ""

    # Address of the sending side lives in the "from" clause, before "by"
    from_clause = re.split(r"\bby\s", clauses, maxsplit=1, flags=re.IGNORECASE)[0]
    ip = ""
    # The TCP peer address is reported in the comment; the bare literal is only the HELO name
    m = _IP_RE.search(_comments(from_clause)[1]) or _IP_RE.search(from_clause) or _BARE_IP_RE.search(from_clause)
    if m:
        try:
            ip = str(ipaddress.ip_address(m.group(1)))
        except ValueError:
            ip = ""

    protocol = parts["with_protocol"].upper()
    tls_version = _tls_version(value)
    tls = bool(tls_version) or protocol.startswith("ESMTPS") or "TLS" in protocol or "cipher=" in value.lower()
    return RoutingHop(
        raw=value,
        from_host=parts["from_host"],
        from_ip=ip,
        by_host=parts["by_host"],
        with_protocol=parts["with_protocol"],
        id=parts["id"],
        timestamp=_parse_date(stamp_text) if stamp_text else None,
        tls=tls,
        tls_version=tls_version,
    )


def _with_delays(hops: List[RoutingHop]) -> Tuple[RoutingHop, ...]:
    """hops are most recent first; each delay is measured against the next (older) hop."""
    out = []
    for i, hop in enumerate(hops):
        delay = None
        if i + 1 < len(hops):
            older = hops[i + 1].timestamp
            if hop.timestamp and older:
                try:
                    delay = (hop.timestamp - older).total_seconds()
                except TypeError:
                    # naive vs aware timestamps
                    delay = None
        out.append(replace(hop, delay=delay))
    return tuple(out)


@dataclass(frozen=True)
class MechanismResult:
    """One method=result entry of an Authentication-Results header."""
    method: str
    result: str
    properties: Dict[str, str] = field(default_factory=dict)
    comment: str = ""

    def to_dict(self) -> dict:
        return {"method": self.method, "result": self.result,
                "properties": dict(self.properties), "comment": self.comment}


def parse_authentication_results(value: str) -> Tuple[str, List[MechanismResult]]:
    """Returns (authserv-id, results) for one Authentication-Results value (RFC 8601)."""
    segments = _split_outside_comments(_unfold(value))
    if not segments:
        return "", []
    head = _comments(segments[0])[0].split()
    authserv_id = head[0] if head else ""
    results = []
    for segment in segments[1:]:
        text, comment = _comments(segment)
        tokens = text.split()
        if not tokens or "=" not in tokens[0]:
            continue
        method, _, result = tokens[0].partition("=")
        props = {}
        for token in tokens[1:]:
            key, sep, val = token.partition("=")
            if sep:
                props[key.lower()] = val.strip('"')
        results.append(MechanismResult(method.lower(), result.lower(), props, comment))
    return authserv_id, results


@dataclass(frozen=True)
class ReceivedSPF:
    result: str
    client_ip: str = ""
    envelope_from: str = ""
    helo: str = ""
    comment: str = ""

    def to_dict(self) -> dict:
        return {"result": self.result, "client_ip": self.client_ip, "envelope_from": self.envelope_from,
                "helo": self.helo, "comment": self.comment}


def parse_received_spf(value: str) -> ReceivedSPF:
    value = _unfold(value)
    text, comment = _comments(value)
    words = text.split()
    result = words[0].lower() if words else ""
    pairs = {k.lower(): v.strip('"') for k, v in _KV_RE.findall(text)}
    client_ip = pairs.get("client-ip", "")
    if not client_ip:
        m = re.search(r"designates\s+(\S+)\s+as", comment)
        client_ip = m.group(1) if m else ""
    return ReceivedSPF(
        result=result,
        client_ip=client_ip,
        envelope_from=pairs.get("envelope-from", pairs.get("smtp.mailfrom", "")),
        helo=pairs.get("helo", ""),
        comment=comment,
    )


@dataclass(frozen=True)
class SignatureClaim:
    """The visible tags of a DKIM-Signature; nothing is verified here."""
    domain: str
    selector: str
    algorithm: str
    canonicalization: str
    signed_headers: Tuple[str, ...]

    def to_dict(self) -> dict:
        return {"domain": self.domain, "selector": self.selector, "algorithm": self.algorithm,
                "canonicalization": self.canonicalization, "signed_headers": list(self.signed_headers)}


def parse_signature_claim(value: str) -> SignatureClaim:
    tags = parse_tag_list(_unfold(value))
    return SignatureClaim(
        domain=tags.get("d", "").lower(),
        selector=tags.get("s", ""),
        algorithm=tags.get("a", ""),
        canonicalization=tags.get("c", "simple/simple"),
        signed_headers=tuple(h.strip().lower() for h in tags.get("h", "").split(":") if h.strip()),
    )


def _signature_claims(values) -> Tuple[SignatureClaim, ...]:
    claims = []
    for value in values:
        try:
            claims.append(parse_signature_claim(str(value)))
        except ValueError as e:
            logger.debug("Skipping unparseable DKIM-Signature: %s", e)
    return tuple(claims)


@dataclass(frozen=True)
class AuthenticationResults:
    authserv_id: str = ""
    results: Tuple[MechanismResult, ...] = ()
    received_spf: Optional[ReceivedSPF] = None
    signatures: Tuple[SignatureClaim, ...] = ()

    def first(self, method: str) -> Optional[MechanismResult]:
        for r in self.results:
            if r.method == method:
                return r
        return None

    def to_dict(self) -> dict:
        spf, dkim, dmarc = self.first("spf"), self.first("dkim"), self.first("dmarc")
        spf_status = spf.result if spf else (self.received_spf.result if self.received_spf else "none")
        spf_details = ""
        if spf:
            spf_details = spf.comment or spf.properties.get("smtp.mailfrom", "")
        elif self.received_spf:
            spf_details = self.received_spf.comment
        signature = self.signatures[0] if self.signatures else None
        dkim_domain = ""
        if dkim:
            dkim_domain = dkim.properties.get("header.d", dkim.properties.get("header.i", "").lstrip("@"))
        dmarc_policy = ""
        if dmarc:
            m = re.search(r"\bp=(\w+)", dmarc.comment, re.IGNORECASE)
            dmarc_policy = m.group(1).lower() if m else ""
        return {
            "spf": {"status": spf_status, "details": spf_details},
            "dkim": {
                "status": dkim.result if dkim else ("present" if signature else "none"),
                "selector": (dkim.properties.get("header.s") if dkim else None) or (signature.selector if signature else ""),
                "domain": dkim_domain or (signature.domain if signature else ""),
            },
            "dmarc": {
                "status": dmarc.result if dmarc else "none",
                "policy": dmarc_policy,
                "alignment": dmarc.properties.get("header.from", "") if dmarc else "",
            },
            "authserv_id": self.authserv_id,
            "results": [r.to_dict() for r in self.results],
            "received_spf": self.received_spf.to_dict() if self.received_spf else None,
            "dkim_signatures": [s.to_dict() for s in self.signatures],
        }


@dataclass(frozen=True)
class SecurityMetadata:
    tls: bool
    encryption: str
    spam_score: Optional[float]
    virus_scan: str
    phishing_check: str
    phishing_indicators: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "tls": self.tls,
            "encryption": self.encryption,
            "spam_score": self.spam_score,
            "virus_scan": self.virus_scan,
            "phishing_check": self.phishing_check,
            "phishing_indicators": list(self.phishing_indicators),
        }


@dataclass(frozen=True)
class EmailHeaderBundle:
    summary: EmailSummary
    routing: Tuple[RoutingHop, ...]
    authentication: AuthenticationResults
    security: SecurityMetadata
    metadata: Dict[str, str]
    routing_order: str = ROUTING_ORDER

    def path(self) -> List[RoutingHop]:
        """Hops from origin to final recipient."""
        return list(reversed(self.routing))

    def to_dict(self) -> dict:
        return {
            "summary": self.summary.to_dict(),
            "routing": [h.to_dict() for h in self.routing],
            "routing_order": self.routing_order,
            "authentication": self.authentication.to_dict(),
            "security": self.security.to_dict(),
            "metadata": dict(self.metadata),
        }


def _spam_score(headers) -> Optional[float]:
    raw = headers.get("X-Spam-Score")
    if raw:
        m = re.search(r"-?\d+(?:\.\d+)?", str(raw))
        if m:
            return float(m.group(0))
    status = headers.get("X-Spam-Status")
    if status:
        m = _SPAM_STATUS_SCORE_RE.search(str(status))
        if m:
            return float(m.group(1))
    return None


def _virus_scan(headers) -> str:
    status = _unfold(str(headers.get("X-Virus-Status", ""))).lower()
    if status:
        if "infected" in status or ("virus" in status and "clean" not in status):
            return "infected"
        return "clean"
    if headers.get("X-Virus-Scanned"):
        return "scanned"
    return "not_scanned"


def _phishing(summary: EmailSummary, headers, auth: AuthenticationResults) -> Tuple[str, Tuple[str, ...]]:
    indicators = []
    from_domain = _domain_of(summary.sender)
    rp_domain = _domain_of(summary.return_path)
    reply_domain = _domain_of(_decode(str(headers.get("Reply-To", ""))))
    if from_domain and rp_domain and from_domain != rp_domain:
        indicators.append(f"Return-Path domain {rp_domain} differs from From domain {from_domain}")
    if from_domain and reply_domain and from_domain != reply_domain:
        indicators.append(f"Reply-To domain {reply_domain} differs from From domain {from_domain}")
    for method in ("spf", "dkim", "dmarc"):
        r = auth.first(method)
        if r is not None and r.result in ("fail", "softfail", "permerror"):
            indicators.append(f"{method.upper()} {r.result}")
    display, _ = parseaddr(summary.sender)
    if display and "@" in display and _domain_of(display) not in ("", from_domain):
        indicators.append(f"display name impersonates another address: {display}")
    if not indicators:
        return "safe", ()
    return "suspicious", tuple(indicators)


def parse_headers(raw: str) -> EmailHeaderBundle:
    """
    Parses a pasted header block. Folded lines and either line ending are
    accepted; anything after the first blank line is ignored.
    """
    text = (raw or "").lstrip("\r\n")
    headers = HeaderParser(policy=policy.compat32).parsestr(text, headersonly=True)

    def get(name: str) -> str:
        value = headers.get(name)
        return _decode(str(value)) if value is not None else ""

    date = get("Date")
    parsed_date = _parse_date(date) if date else None
    summary = EmailSummary(
        sender=get("From"),
        to=", ".join(a for _, a in getaddresses([get("To")]) if a) or get("To"),
        subject=get("Subject"),
        date=parsed_date.isoformat() if parsed_date else date,
        message_id=get("Message-ID"),
        return_path=get("Return-Path").strip("<>"),
    )

    hops = [parse_received(str(v)) for v in headers.get_all("Received") or []]
    routing = _with_delays(hops)

    authserv_id, results = "", []
    for value in headers.get_all("Authentication-Results") or []:
        server_id, parsed = parse_authentication_results(str(value))
        authserv_id = authserv_id or server_id
        results.extend(parsed)
    received_spf = headers.get_all("Received-SPF") or []
    auth = AuthenticationResults(
        authserv_id=authserv_id,
        results=tuple(results),
        received_spf=parse_received_spf(str(received_spf[0])) if received_spf else None,
        signatures=_signature_claims(headers.get_all("DKIM-Signature") or []),
    )

    tls_hops = [h for h in routing if h.tls]
    version = next((h.tls_version for h in tls_hops if h.tls_version), None)
    phishing, indicators = _phishing(summary, headers, auth)
    security = SecurityMetadata(
        tls=bool(tls_hops),
        encryption=version or ("TLS" if tls_hops else "None"),
        spam_score=_spam_score(headers),
        virus_scan=_virus_scan(headers),
        phishing_check=phishing,
        phishing_indicators=indicators,
    )

    metadata = {
        "user_agent": get("User-Agent"),
        "x_originating_ip": get("X-Originating-IP").strip("[]"),
        "x_mailer": get("X-Mailer"),
        "mime_version": get("MIME-Version"),
        "content_type": get("Content-Type"),
    }
    logger.debug("Parsed headers: %d hops, %d auth results", len(routing), len(results))
    return EmailHeaderBundle(summary, routing, auth, security, metadata)


def client_ip(bundle: EmailHeaderBundle) -> Optional[str]:
    """The connecting client: Received-SPF client-ip, else the oldest public hop address."""
    spf = bundle.authentication.received_spf
    if spf and spf.client_ip:
        return spf.client_ip
    for hop in bundle.path():
        if hop.from_ip:
            try:
                if ipaddress.ip_address(hop.from_ip).is_global:
                    return hop.from_ip
            except ValueError:
                continue
    return None


SPF_RESULT_NAMES = {"Pass": "pass", "HardFail": "fail", "SoftFail": "softfail", "Neutral": "neutral"}


@dataclass(frozen=True)
class CrossCheckReport:
    live: Dict[str, dict]
    discrepancies: Tuple[str, ...]
    notes: Tuple[str, ...]

    def to_dict(self) -> dict:
        return {"live": dict(self.live), "discrepancies": list(self.discrepancies), "notes": list(self.notes)}


def cross_check(bundle: EmailHeaderBundle, resolver: Optional[DNSResolver] = None,
                deadline: Optional[Deadline] = None) -> CrossCheckReport:
    """
    Re-runs SPF, DKIM key lookup and DMARC live and lists where the header
    claims disagree. Evaluator failures are reported as notes.
    """
    resolver = resolver or DNSResolver()
    auth = bundle.authentication
    from_domain = _domain_of(bundle.summary.sender)
    mail_from = _domain_of(bundle.summary.return_path) or from_domain
    live, discrepancies, notes = {}, [], []

    spf_pass = False
    ip = client_ip(bundle)
    if mail_from:
        try:
            spf = evaluate_spf(mail_from, resolver, client_ip=ip, sender=bundle.summary.return_path or None,
                               deadline=deadline)
            live_result = SPF_RESULT_NAMES[spf.matched_qualifier.value]
            spf_pass = spf.matched_qualifier.value == "Pass"
            live["spf"] = {"domain": mail_from, "client_ip": ip, "result": live_result}
            claimed = auth.first("spf")
            claimed_result = claimed.result if claimed else (auth.received_spf.result if auth.received_spf else None)
            if ip is None:
                notes.append("No client IP in headers; SPF evaluated without a connecting address")
            elif claimed_result and claimed_result != live_result:
                discrepancies.append(f"SPF: headers claim {claimed_result}, live evaluation gives {live_result}")
        except (CheckError, ValueError) as e:
            notes.append(f"SPF check for {mail_from} failed: {e}")

    dkim_domain, dkim_pass = None, False
    for claim in auth.signatures:
        if not claim.domain or not claim.selector:
            continue
        try:
            result = evaluate_dkim(claim.domain, claim.selector, resolver, deadline=deadline)
            live.setdefault("dkim", []).append({"domain": claim.domain, "selector": claim.selector,
                                                "key_found": True, "key_size": result.key.key_size_bits})
            if dkim_domain is None:
                dkim_domain = claim.domain
                claimed = auth.first("dkim")
                dkim_pass = bool(claimed and claimed.result == "pass")
        except CheckError as e:
            live.setdefault("dkim", []).append({"domain": claim.domain, "selector": claim.selector,
                                                "key_found": False, "error": e.kind.value})
            claimed = auth.first("dkim")
            if claimed and claimed.result == "pass":
                discrepancies.append(
                    f"DKIM: headers claim pass for {claim.selector}._domainkey.{claim.domain}, "
                    f"but the key is unavailable now ({e.kind.value})"
                )

    if from_domain:
        try:
            dmarc = evaluate_dmarc(from_domain, resolver, deadline, spf_domain=mail_from, spf_pass=spf_pass,
                                   dkim_domain=dkim_domain, dkim_pass=dkim_pass)
            live_pass = dmarc.alignment.passed if dmarc.alignment else False
            live["dmarc"] = {"domain": from_domain, "policy": dmarc.policy.policy.value,
                             "result": "pass" if live_pass else "fail"}
            claimed = auth.first("dmarc")
            if claimed:
                m = re.search(r"\bp=(\w+)", claimed.comment, re.IGNORECASE)
                if m and m.group(1).lower() != dmarc.policy.policy.value:
                    discrepancies.append(
                        f"DMARC: headers report p={m.group(1).lower()}, published policy is p={dmarc.policy.policy.value}"
                    )
                if claimed.result in ("pass", "fail") and claimed.result != live["dmarc"]["result"]:
                    discrepancies.append(
                        f"DMARC: headers claim {claimed.result}, live alignment gives {live['dmarc']['result']}"
                    )
        except CheckError as e:
            notes.append(f"DMARC check for {from_domain} failed: {e}")

    return CrossCheckReport(live=live, discrepancies=tuple(discrepancies), notes=tuple(notes))
