"""
Email Auth Inspector — DMARC Evaluator
Parses _dmarc policy records (RFC 7489), computes identifier alignment and a
compliance score.
"""

import logging
import random
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import List, Optional, Tuple

import tldextract

from dns_resolver import DNSResolver, DomainRecord, RecordType, normalize_name, parse_tag_list
from errors import CheckError, Deadline, ErrorKind

logger = logging.getLogger(__name__)

# Bundled public suffix snapshot; never fetched over the network
_extract = tldextract.TLDExtract(suffix_list_urls=(), cache_dir=None)

DEFAULT_INTERVAL = 86400
POLICY_POINTS = {"reject": 50, "quarantine": 35, "none": 10}
SUBDOMAIN_POINTS = {"reject": 15, "quarantine": 10, "none": 0}
AGGREGATE_POINTS = 15
FORENSIC_POINTS = 10
STRICT_ALIGNMENT_POINTS = 5
DOWNGRADE = {"reject": "quarantine", "quarantine": "none", "none": "none"}


class Policy(Enum):
    NONE = "none"
    QUARANTINE = "quarantine"
    REJECT = "reject"


class AlignmentMode(Enum):
    STRICT = "strict"
    RELAXED = "relaxed"


ALIGNMENT_TAGS = {"s": AlignmentMode.STRICT, "r": AlignmentMode.RELAXED}


def organizational_domain(domain: str) -> str:
    """mail.example.co.uk -> example.co.uk; unknown suffixes return the name unchanged."""
    domain = normalize_name(domain)
    ext = _extract(domain)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return domain


def domains_aligned(domain: str, from_domain: str, mode: AlignmentMode) -> bool:
    if not domain or not from_domain:
        return False
    domain, from_domain = normalize_name(domain), normalize_name(from_domain)
    if mode == AlignmentMode.STRICT:
        return domain == from_domain
    return organizational_domain(domain) == organizational_domain(from_domain)


@dataclass(frozen=True)
class DMARCPolicy:
    version: str
    policy: Policy
    subdomain_policy: Policy
    subdomain_policy_inherited: bool
    percentage: int
    dkim_alignment: AlignmentMode
    spf_alignment: AlignmentMode
    aggregate_uris: Tuple[str, ...]
    forensic_uris: Tuple[str, ...]
    interval: timedelta
    failure_options: Tuple[str, ...] = ("0",)
    report_format: str = "afrf"
    record_domain: str = ""
    warnings: Tuple[str, ...] = ()

    @property
    def interval_days(self) -> int:
        """Whole days; fractional days are truncated."""
        return int(self.interval.total_seconds()) // 86400

    def policy_for(self, is_subdomain: bool) -> Policy:
        return self.subdomain_policy if is_subdomain else self.policy


def _uris(value: str) -> Tuple[str, ...]:
    return tuple(u.strip() for u in value.split(",") if u.strip())


def parse_dmarc_record(text: str, record_domain: str = "") -> DMARCPolicy:
    """Unknown tags are ignored; a missing or invalid p= makes the record invalid."""
    first = text.split(";", 1)[0].strip()
    name, _, version = first.partition("=")
    if name.strip().lower() != "v" or version.strip() != "DMARC1":
        raise CheckError(ErrorKind.INVALID_DMARC_RECORD, "record must start with v=DMARC1", record_domain)

    try:
        tags = parse_tag_list(text)
    except ValueError as e:
        raise CheckError(ErrorKind.INVALID_DMARC_RECORD, str(e), record_domain)
    warnings = []

    if "p" not in tags:
        raise CheckError(ErrorKind.INVALID_DMARC_RECORD, "required tag p= is missing", record_domain)
    try:
        policy = Policy(tags["p"].lower())
    except ValueError:
        raise CheckError(ErrorKind.INVALID_DMARC_RECORD, f"invalid policy p={tags['p']}", record_domain)

    subdomain_policy, inherited = policy, True
    if "sp" in tags:
        try:
            subdomain_policy, inherited = Policy(tags["sp"].lower()), False
        except ValueError:
            warnings.append(f"invalid sp={tags['sp']} ignored; subdomains inherit p={policy.value}")

    pct = tags.get("pct", "100")
    if not pct.isdigit() or not 0 <= int(pct) <= 100:
        raise CheckError(ErrorKind.INVALID_DMARC_RECORD, f"pct={pct} is not an integer between 0 and 100", record_domain)

    alignment = {}
    for tag in ("adkim", "aspf"):
        value = tags.get(tag, "r").lower()
        if value not in ALIGNMENT_TAGS:
            warnings.append(f"invalid {tag}={value} ignored; using relaxed")
            value = "r"
        alignment[tag] = ALIGNMENT_TAGS[value]

    interval = tags.get("ri", str(DEFAULT_INTERVAL))
    if not interval.isdigit():
        warnings.append(f"invalid ri={interval} ignored; using {DEFAULT_INTERVAL}")
        interval = str(DEFAULT_INTERVAL)

    return DMARCPolicy(
        version="DMARC1",
        policy=policy,
        subdomain_policy=subdomain_policy,
        subdomain_policy_inherited=inherited,
        percentage=int(pct),
        dkim_alignment=alignment["adkim"],
        spf_alignment=alignment["aspf"],
        aggregate_uris=_uris(tags.get("rua", "")),
        forensic_uris=_uris(tags.get("ruf", "")),
        interval=timedelta(seconds=int(interval)),
        failure_options=tuple(o.strip() for o in tags.get("fo", "0").split(":") if o.strip()),
        report_format=tags.get("rf", "afrf"),
        record_domain=record_domain,
        warnings=tuple(warnings),
    )


def fetch_dmarc_record(domain: str, resolver: DNSResolver,
                       deadline: Optional[Deadline] = None) -> Tuple[DomainRecord, str]:
    """
    Returns (record, policy domain). Falls back to the organizational domain
    when the queried name publishes nothing (RFC 7489 §6.6.3).
    """
    domain = normalize_name(domain)
    candidates = [domain]
    org = organizational_domain(domain)
    if org != domain:
        candidates.append(org)
    for name in candidates:
        try:
            records = resolver.fetch_record(f"_dmarc.{name}", RecordType.DMARC, "v=DMARC1", deadline)
        except CheckError as e:
            if e.kind != ErrorKind.NXDOMAIN:
                raise
            records = []
        if len(records) > 1:
            raise CheckError(ErrorKind.INVALID_DMARC_RECORD, f"_dmarc.{name} publishes {len(records)} DMARC records", domain)
        if records:
            if name != domain:
                logger.info("DMARC for %s inherited from organizational domain %s", domain, name)
            return records[0], name
    raise CheckError(ErrorKind.NO_DMARC_RECORD, f"no DMARC record published for {domain}", domain)


@dataclass(frozen=True)
class AlignmentResult:
    from_domain: str
    spf_domain: Optional[str]
    dkim_domain: Optional[str]
    spf_aligned: bool
    dkim_aligned: bool

    @property
    def passed(self) -> bool:
        return self.spf_aligned or self.dkim_aligned

    def to_dict(self) -> dict:
        return {
            "from_domain": self.from_domain,
            "spf_domain": self.spf_domain,
            "dkim_domain": self.dkim_domain,
            "spf_aligned": self.spf_aligned,
            "dkim_aligned": self.dkim_aligned,
            "dmarc_pass": self.passed,
        }


def evaluate_alignment(policy: DMARCPolicy, from_domain: str,
                       spf_domain: Optional[str] = None, spf_pass: bool = False,
                       dkim_domain: Optional[str] = None, dkim_pass: bool = False) -> AlignmentResult:
    """An identifier only aligns when its own check passed."""
    return AlignmentResult(
        from_domain=normalize_name(from_domain),
        spf_domain=spf_domain,
        dkim_domain=dkim_domain,
        spf_aligned=spf_pass and domains_aligned(spf_domain, from_domain, policy.spf_alignment),
        dkim_aligned=dkim_pass and domains_aligned(dkim_domain, from_domain, policy.dkim_alignment),
    )


def disposition(policy: DMARCPolicy, alignment: AlignmentResult, is_subdomain: bool = False,
                rng: Optional[random.Random] = None) -> Policy:
    """
    What a receiver would do with the message. pct samples only enforcement:
    a message sampled out is handled one step more leniently.
    """
    if alignment.passed:
        return Policy.NONE
    applied = policy.policy_for(is_subdomain)
    if policy.percentage >= 100:
        return applied
    rng = rng or random.Random()
    if rng.random() * 100 < policy.percentage:
        return applied
    return Policy(DOWNGRADE[applied.value])


def compliance_score(policy: DMARCPolicy) -> int:
    score = POLICY_POINTS[policy.policy.value] * policy.percentage / 100
    score += SUBDOMAIN_POINTS[policy.subdomain_policy.value]
    if policy.aggregate_uris:
        score += AGGREGATE_POINTS
    if policy.forensic_uris:
        score += FORENSIC_POINTS
    if policy.dkim_alignment == AlignmentMode.STRICT:
        score += STRICT_ALIGNMENT_POINTS
    if policy.spf_alignment == AlignmentMode.STRICT:
        score += STRICT_ALIGNMENT_POINTS
    return max(0, min(100, int(round(score))))


@dataclass(frozen=True)
class DMARCEvaluationResult:
    domain: str
    record: DomainRecord
    policy: DMARCPolicy
    compliance_score: int
    alignment: Optional[AlignmentResult] = None
    recommendations: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def inherited_from_org(self) -> bool:
        return self.policy.record_domain != self.domain

    def _frequency(self) -> str:
        seconds = int(self.policy.interval.total_seconds())
        if seconds == DEFAULT_INTERVAL:
            return "Daily"
        if seconds < DEFAULT_INTERVAL:
            return f"Every {seconds // 3600} hours"
        return f"Every {self.policy.interval_days} days"

    def _checks(self) -> List[dict]:
        p = self.policy
        checks = [{"check": "DMARC Record Exists", "status": "pass", "details": "Valid DMARC record found"}]
        checks.append({
            "check": "Policy Configuration",
            "status": "warning" if p.policy == Policy.NONE else "pass",
            "details": f"{p.policy.value.capitalize()} policy configured",
        })
        reporting = bool(p.aggregate_uris) + bool(p.forensic_uris)
        checks.append({
            "check": "Reporting Setup",
            "status": ("pass", "warning", "pass")[reporting] if p.aggregate_uris else "fail",
            "details": {
                0: "No reporting addresses configured",
                1: "Only one report type configured",
                2: "Both aggregate and forensic reporting configured",
            }[reporting],
        })
        checks.append({
            "check": "Subdomain Policy",
            "status": "warning" if p.subdomain_policy_inherited else "pass",
            "details": (f"No explicit subdomain policy set; inherits p={p.policy.value}"
                        if p.subdomain_policy_inherited else f"Explicit sp={p.subdomain_policy.value}"),
        })
        checks.append({
            "check": "Alignment Mode",
            "status": "pass",
            "details": f"{p.spf_alignment.value.capitalize()} SPF, {p.dkim_alignment.value.capitalize()} DKIM alignment",
        })
        checks.append({
            "check": "Percentage Coverage",
            "status": "pass" if p.percentage == 100 else "warning",
            "details": f"{p.percentage}% of emails covered by policy",
        })
        for warning in p.warnings:
            checks.append({"check": "Record Syntax", "status": "warning", "details": warning})
        return checks

    def to_dict(self) -> dict:
        p = self.policy
        strength = {"reject": "strong", "quarantine": "moderate", "none": "weak"}
        protection = {"reject": "full", "quarantine": "partial", "none": "none"}
        if self.alignment is not None:
            spf_alignment = "pass" if self.alignment.spf_aligned else "fail"
            dkim_alignment = "pass" if self.alignment.dkim_aligned else "fail"
        else:
            spf_alignment = dkim_alignment = "not_evaluated"
        return {
            "domain": self.domain,
            "record_found": True,
            "dmarc_record": self.record.raw_text,
            "record_domain": p.record_domain,
            "inherited_from_organizational_domain": self.inherited_from_org,
            "policy": {
                "version": p.version,
                "policy": p.policy.value,
                "subdomain_policy": p.subdomain_policy.value,
                "subdomain_policy_inherited": p.subdomain_policy_inherited,
                "percentage": p.percentage,
                "alignment": {"dkim": p.dkim_alignment.value, "spf": p.spf_alignment.value},
                "reporting": {
                    "aggregate_uri": list(p.aggregate_uris),
                    "forensic_uri": list(p.forensic_uris),
                    "interval": int(p.interval.total_seconds()),
                    "interval_days": p.interval_days,
                    "failure_options": list(p.failure_options),
                },
            },
            "compliance_analysis": {
                "overall_score": self.compliance_score,
                "spf_alignment": spf_alignment,
                "dkim_alignment": dkim_alignment,
                "policy_strength": strength[p.policy.value],
                "reporting_configured": bool(p.aggregate_uris),
                "subdomain_protection": protection[p.subdomain_policy.value],
            },
            "alignment": self.alignment.to_dict() if self.alignment else None,
            "validation_checks": self._checks(),
            "subdomain_analysis": {
                "explicitly_protected": not p.subdomain_policy_inherited,
                "inherits_policy": p.subdomain_policy_inherited,
                "effective_policy": p.subdomain_policy.value,
                "recommended_policy": "reject",
                "risk_level": {"reject": "low", "quarantine": "medium", "none": "high"}[p.subdomain_policy.value],
            },
            "aggregate_reports": {
                "enabled": bool(p.aggregate_uris),
                "frequency": self._frequency(),
                "destinations": [u.split(":", 1)[-1].split("!")[0] for u in p.aggregate_uris],
            },
            "forensic_reports": {
                "enabled": bool(p.forensic_uris),
                "triggers": _fo_triggers(p.failure_options),
                "destinations": [u.split(":", 1)[-1].split("!")[0] for u in p.forensic_uris],
            },
            "recommendations": list(self.recommendations),
            "security_score": self.compliance_score,
        }


def _fo_triggers(options) -> List[str]:
    names = {
        "0": "All mechanisms fail",
        "1": "Any mechanism fails",
        "d": "DKIM failure",
        "s": "SPF failure",
    }
    return [names[o] for o in options if o in names]


def _recommendations(policy: DMARCPolicy) -> List[str]:
    tips = []
    if policy.policy == Policy.NONE:
        tips.append('Policy "none" only monitors; move to "quarantine" once reports look clean')
    elif policy.policy == Policy.QUARANTINE:
        tips.append('Consider upgrading policy from "quarantine" to "reject" for maximum protection')
    if policy.subdomain_policy_inherited and policy.policy != Policy.REJECT:
        tips.append("Add an explicit subdomain policy (sp=reject) to protect subdomains")
    if policy.percentage < 100:
        tips.append(f"pct={policy.percentage}: only part of failing mail is subject to the policy")
    if not policy.aggregate_uris:
        tips.append("Add rua= to receive aggregate reports about who sends as this domain")
    return tips


def evaluate_dmarc(domain: str, resolver: Optional[DNSResolver] = None, deadline: Optional[Deadline] = None,
                   spf_domain: Optional[str] = None, spf_pass: bool = False,
                   dkim_domain: Optional[str] = None, dkim_pass: bool = False) -> DMARCEvaluationResult:
    """
    Evaluates the DMARC policy governing domain. When SPF / DKIM identifiers are
    given, alignment is computed with domain as the From-header domain.
    """
    domain = normalize_name(domain)
    record, policy_domain = fetch_dmarc_record(domain, resolver or DNSResolver(), deadline)
    policy = parse_dmarc_record(record.raw_text, policy_domain)
    alignment = None
    if spf_domain or dkim_domain:
        alignment = evaluate_alignment(policy, domain, spf_domain, spf_pass, dkim_domain, dkim_pass)
    score = compliance_score(policy)
    logger.info("DMARC %s: p=%s sp=%s pct=%d score=%d", domain, policy.policy.value,
                policy.subdomain_policy.value, policy.percentage, score)
    return DMARCEvaluationResult(
        domain=domain,
        record=record,
        policy=policy,
        compliance_score=score,
        alignment=alignment,
        recommendations=tuple(_recommendations(policy)),
    )
