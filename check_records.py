"""
Email Auth Inspector — Request/Result Functions
One synchronous function per route. Each returns a JSON-serializable dict;
evaluator failures come back as structured errors, never as exceptions.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from config import RequestConfig
from dkim_check import evaluate_dkim
from dmarc_check import evaluate_dmarc
from dns_resolver import DNSResolver, normalize_name
from errors import CheckError, Deadline, ErrorKind
from header_parser import cross_check as run_cross_check
from header_parser import parse_headers
from smtp_probe import probe_smtp
from spf_check import evaluate_spf

logger = logging.getLogger(__name__)

INVALID_INPUT = "InvalidInput"


def _deadline(kind: ErrorKind = ErrorKind.DNS_TIMEOUT) -> Deadline:
    return Deadline(RequestConfig().deadline, kind)


def _failure(domain: str, error: str, message: str, issue: str) -> dict:
    return {
        "domain": domain,
        "record_found": False,
        "valid": False,
        "error": error,
        "error_message": message,
        "security_score": 0,
        "recommendations": [issue] if issue else [],
    }


NOT_FOUND_ISSUES = {
    ErrorKind.NO_SPF_RECORD: "No SPF record found: domain is vulnerable to envelope spoofing.",
    ErrorKind.NO_DKIM_RECORD: "No DKIM record found: emails from this domain have no cryptographic signature.",
    ErrorKind.NO_DMARC_RECORD: "No DMARC record found: no rejection policy for unauthenticated emails.",
    ErrorKind.NXDOMAIN: "The domain does not exist in DNS.",
}


def _from_error(domain: str, e: CheckError) -> dict:
    logger.info("Check for %s failed: %s", domain, e)
    return _failure(domain, e.kind.value, e.message, NOT_FOUND_ISSUES.get(e.kind, ""))


def validate_spf(domain: str, client_ip: Optional[str] = None, resolver: Optional[DNSResolver] = None) -> dict:
    """POST /validate-spf"""
    domain = normalize_name(domain or "")
    if not domain:
        return _failure(domain, INVALID_INPUT, "domain is required", "")
    try:
        return evaluate_spf(domain, resolver or DNSResolver(), client_ip=client_ip, deadline=_deadline()).to_dict()
    except CheckError as e:
        return _from_error(domain, e)
    except ValueError as e:
        return _failure(domain, INVALID_INPUT, str(e), "")


def validate_dkim(domain: str, selector: str, message: Optional[str] = None,
                  resolver: Optional[DNSResolver] = None) -> dict:
    """POST /validate-dkim"""
    domain = normalize_name(domain or "")
    if not domain or not (selector or "").strip():
        return _failure(domain, INVALID_INPUT, "domain and selector are required", "")
    try:
        result = evaluate_dkim(domain, selector, resolver or DNSResolver(), message=message, deadline=_deadline())
        return result.to_dict()
    except CheckError as e:
        out = _from_error(domain, e)
        out["selector"] = selector
        return out


def check_dkim(domain: str, selectors: Optional[List[str]] = None,
               resolver: Optional[DNSResolver] = None) -> dict:
    """Sweeps common selectors and returns the first key record found."""
    domain = normalize_name(domain or "")
    selectors = selectors or RequestConfig().dkim_selectors
    resolver = resolver or DNSResolver()
    deadline = _deadline()
    last = None
    for selector in selectors:
        try:
            result = evaluate_dkim(domain, selector, resolver, deadline=deadline).to_dict()
            result["selectors_tested"] = selectors[:selectors.index(selector) + 1]
            return result
        except CheckError as e:
            if e.kind == ErrorKind.DNS_TIMEOUT:
                return _from_error(domain, e)
            last = e
            continue
    out = _failure(
        domain,
        ErrorKind.NO_DKIM_RECORD.value,
        last.message if last else "no selectors to test",
        f"No DKIM record found (selectors tested: {', '.join(selectors)}). "
        "Emails from this domain have no cryptographic signature.",
    )
    out["selectors_tested"] = list(selectors)
    return out


def validate_dmarc(domain: str, resolver: Optional[DNSResolver] = None) -> dict:
    """POST /validate-dmarc"""
    domain = normalize_name(domain or "")
    if not domain:
        return _failure(domain, INVALID_INPUT, "domain is required", "")
    try:
        return evaluate_dmarc(domain, resolver or DNSResolver(), _deadline()).to_dict()
    except CheckError as e:
        return _from_error(domain, e)


def analyze_headers(headers: str, cross_check: bool = False, resolver: Optional[DNSResolver] = None) -> dict:
    """POST /analyze-headers"""
    if not (headers or "").strip():
        return {"error": INVALID_INPUT, "error_message": "headers are required"}
    bundle = parse_headers(headers)
    out = bundle.to_dict()
    if cross_check:
        out["cross_check"] = run_cross_check(bundle, resolver or DNSResolver(), _deadline()).to_dict()
    return out


@dataclass(frozen=True)
class MXHost:
    priority: int
    host: str
    ip_addresses: Tuple[str, ...]

    def to_dict(self) -> dict:
        return {"priority": self.priority, "host": self.host, "ip_addresses": list(self.ip_addresses)}


@dataclass(frozen=True)
class MXLookupResult:
    domain: str
    mx_records: Tuple[MXHost, ...]
    null_mx: bool
    security_score: int
    recommendations: Tuple[str, ...]

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "mx_records": [m.to_dict() for m in self.mx_records],
            "total_records": len(self.mx_records),
            "null_mx": self.null_mx,
            "security_score": self.security_score,
            "recommendations": list(self.recommendations),
        }


def check_mx(domain: str, resolver: Optional[DNSResolver] = None,
             deadline: Optional[Deadline] = None) -> MXLookupResult:
    """Returns the MX servers for a domain, sorted by priority, with their addresses."""
    domain = normalize_name(domain)
    resolver = resolver or DNSResolver()
    hosts = []
    for priority, host in resolver.fetch_mx(domain, deadline):
        addresses: List[str] = []
        if host:
            try:
                addresses = resolver.fetch_addresses(host, deadline)
            except CheckError as e:
                if e.kind != ErrorKind.NXDOMAIN:
                    raise
        hosts.append(MXHost(priority, host, tuple(addresses)))

    # RFC 7505: a single "." exchange means the domain accepts no mail
    null_mx = len(hosts) == 1 and hosts[0].host in ("", ".")
    recommendations = []
    if null_mx:
        score = 100
        recommendations.append("Null MX published: the domain explicitly accepts no mail")
    elif not hosts:
        score = 0
        recommendations.append("No MX records found: mail falls back to the A record or is undeliverable")
    else:
        score = 60
        if len(hosts) >= 2:
            score += 20
        else:
            recommendations.append("Add a backup MX server for redundancy")
        unresolved = [h.host for h in hosts if not h.ip_addresses]
        if unresolved:
            score -= 15 * len(unresolved)
            recommendations.append(f"MX hosts without A/AAAA records: {', '.join(unresolved)}")
        else:
            score += 20
    logger.info("MX %s: %d records", domain, len(hosts))
    return MXLookupResult(domain, tuple(hosts), null_mx, max(0, min(100, score)), tuple(recommendations))


def mx_lookup(domain: str, resolver: Optional[DNSResolver] = None) -> dict:
    """POST /mx-lookup"""
    domain = normalize_name(domain or "")
    if not domain:
        return _failure(domain, INVALID_INPUT, "domain is required", "")
    try:
        return check_mx(domain, resolver, _deadline()).to_dict()
    except CheckError as e:
        out = _from_error(domain, e)
        out.update({"mx_records": [], "total_records": 0})
        return out


def smtp_server_test(server: str, port: int, test_auth: bool = False, username: Optional[str] = None,
                     password: Optional[str] = None) -> dict:
    """POST /smtp-server-test"""
    try:
        result = probe_smtp(server, port, test_auth, username, password, deadline=_deadline(ErrorKind.TIMEOUT))
    except ValueError as e:
        return {
            "server": server,
            "port": port,
            "connected": False,
            "connection_successful": False,
            "error": INVALID_INPUT,
            "error_message": str(e),
        }
    return result.to_dict()


def run_check(domain: str, resolver: Optional[DNSResolver] = None) -> dict:
    """Full domain report: MX, SPF, DKIM selector sweep and DMARC, with a spoofing verdict."""
    resolver = resolver or DNSResolver()
    mx = mx_lookup(domain, resolver)
    spf = validate_spf(domain, resolver=resolver)
    dkim = check_dkim(domain, resolver=resolver)
    dmarc = validate_dmarc(domain, resolver=resolver)

    vulnerable = not spf["record_found"] or not dkim["record_found"] or not dmarc["record_found"]
    weak_policy = (
        spf.get("policy", {}).get("qualifier") in ("~all", "?all", "+all", "")
        or dmarc.get("policy", {}).get("policy") in ("none", "quarantine")
    )
    if vulnerable:
        verdict = "VULNERABLE"
    elif weak_policy:
        verdict = "WEAK"
    else:
        verdict = "OK"
    return {"domain": normalize_name(domain), "mx": mx, "spf": spf, "dkim": dkim, "dmarc": dmarc,
            "verdict": verdict}
