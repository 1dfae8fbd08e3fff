"""
Email Auth Inspector — SPF Evaluator
Parses SPF records into ordered terms and evaluates include/redirect chains
with a hard cap of 10 DNS-querying terms (RFC 7208 §4.6.4).
"""

import ipaddress
import logging
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from dns_resolver import DNSResolver, RecordType, DomainRecord, normalize_name
from errors import CheckError, Deadline, ErrorKind

logger = logging.getLogger(__name__)

LOOKUP_LIMIT = 10
NEAR_LIMIT = 8
VOID_LOOKUP_LIMIT = 2
MX_HOST_LIMIT = 10


class TermKind(Enum):
    VERSION = "version"
    INCLUDE = "include"
    A = "a"
    MX = "mx"
    IP4 = "ip4"
    IP6 = "ip6"
    ALL = "all"
    EXISTS = "exists"
    PTR = "ptr"
    REDIRECT = "redirect"
    EXP = "exp"


MECHANISMS = {
    TermKind.INCLUDE, TermKind.A, TermKind.MX, TermKind.IP4, TermKind.IP6,
    TermKind.ALL, TermKind.EXISTS, TermKind.PTR,
}
LOOKUP_TERMS = {TermKind.INCLUDE, TermKind.A, TermKind.MX, TermKind.EXISTS, TermKind.PTR, TermKind.REDIRECT}


class SPFResult(Enum):
    PASS = "Pass"
    SOFTFAIL = "SoftFail"
    HARDFAIL = "HardFail"
    NEUTRAL = "Neutral"


QUALIFIER_RESULTS = {
    "+": SPFResult.PASS,
    "-": SPFResult.HARDFAIL,
    "~": SPFResult.SOFTFAIL,
    "?": SPFResult.NEUTRAL,
}

QUALIFIER_ACTIONS = {
    "-": ("Hard Fail", "Emails from unauthorized sources should be rejected"),
    "~": ("Soft Fail", "Emails from unauthorized sources will be marked as suspicious but not rejected"),
    "?": ("Neutral", "No assertion is made about unauthorized sources"),
    "+": ("Pass", "Any server on the internet is authorized to send for this domain"),
}

QUALIFIER_SCORES = {"-": 100, "~": 70, "?": 30, "+": 30}
MISSING_ALL_SCORE = 30
INVALID_INCLUDE_PENALTY = 15
NEAR_LIMIT_PENALTY = 10
LIMIT_EXCEEDED_PENALTY = 20


class TermStatus(Enum):
    VALID = "valid"
    INVALID = "invalid"
    NOT_FOUND = "not_found"
    IGNORED = "ignored"
    UNEVALUATED = "unevaluated"


@dataclass(frozen=True)
class SPFTerm:
    """One term of an SPF record; str(term) gives back its record text."""
    kind: TermKind
    qualifier: str = "+"
    value: str = ""
    cidr4: Optional[int] = None
    cidr6: Optional[int] = None
    explicit_qualifier: bool = False
    error: Optional[str] = None

    @property
    def is_mechanism(self) -> bool:
        return self.kind in MECHANISMS

    @property
    def needs_lookup(self) -> bool:
        return self.kind in LOOKUP_TERMS

    def __str__(self):
        if self.kind == TermKind.VERSION:
            return "v=spf1"
        if self.kind in (TermKind.REDIRECT, TermKind.EXP):
            return f"{self.kind.value}={self.value}"
        text = (self.qualifier if self.explicit_qualifier else "") + self.kind.value
        if self.value:
            text += ":" + self.value
        if self.cidr4 is not None:
            text += f"/{self.cidr4}"
        if self.cidr6 is not None:
            text += f"//{self.cidr6}"
        return text


@dataclass(frozen=True)
class SPFContext:
    """What the record is evaluated against; all fields optional."""
    client_ip: Optional[str] = None
    sender: Optional[str] = None
    helo: Optional[str] = None

    @property
    def ip(self):
        return ipaddress.ip_address(self.client_ip) if self.client_ip else None


_MODIFIER_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9_.\-]*)=(.*)$")
_MECHANISM_RE = re.compile(r"^([+\-~?])?([a-zA-Z][a-zA-Z0-9]*)(.*)$")
_DOMAIN_CIDR_RE = re.compile(r"^(?::([^/]+))?(?:/(\d+))?(?://(\d+))?$")
_MACRO_RE = re.compile(r"%(?:\{([slodiphcrtvSLODIPHCRTV])(\d*)(r?)([.\-+,/_=]*)\}|(%)|(_)|(-))")


def _parse_network(kind: TermKind, value: str) -> Optional[str]:
    """Returns an error string when value is not a valid network for kind."""
    try:
        net = ipaddress.ip_network(value, strict=False)
    except ValueError:
        return f"invalid {kind.value} network '{value}'"
    if kind == TermKind.IP4 and net.version != 4:
        return f"ip4 mechanism holds an IPv{net.version} network"
    if kind == TermKind.IP6 and net.version != 6:
        return f"ip6 mechanism holds an IPv{net.version} network"
    return None


def parse_term(token: str) -> SPFTerm:
    """Parses a single whitespace-delimited token of an SPF record."""
    if token.lower() == "v=spf1":
        return SPFTerm(TermKind.VERSION)

    modifier = _MODIFIER_RE.match(token)
    if modifier:
        name, value = modifier.group(1).lower(), modifier.group(2)
        if name in ("redirect", "exp"):
            error = None if value else f"{name} modifier without a domain"
            return SPFTerm(TermKind(name), value=value, error=error)
        return None

    match = _MECHANISM_RE.match(token)
    if not match:
        raise CheckError(ErrorKind.UNKNOWN_MECHANISM, f"unparseable SPF term '{token}'")
    qualifier, name, rest = match.group(1), match.group(2).lower(), match.group(3)
    try:
        kind = TermKind(name)
    except ValueError:
        raise CheckError(ErrorKind.UNKNOWN_MECHANISM, f"unknown SPF mechanism '{name}' in '{token}'")
    if kind not in MECHANISMS:
        raise CheckError(ErrorKind.UNKNOWN_MECHANISM, f"'{name}' is not a mechanism in '{token}'")

    base = {"qualifier": qualifier or "+", "explicit_qualifier": qualifier is not None}

    if kind == TermKind.ALL:
        if rest:
            return SPFTerm(kind, error=f"'all' takes no argument: '{token}'", **base)
        return SPFTerm(kind, **base)

    if kind in (TermKind.IP4, TermKind.IP6):
        if not rest.startswith(":") or len(rest) < 2:
            return SPFTerm(kind, value=rest.lstrip(":"), error=f"{name} requires a network", **base)
        value = rest[1:]
        return SPFTerm(kind, value=value, error=_parse_network(kind, value), **base)

    if kind in (TermKind.INCLUDE, TermKind.EXISTS):
        if not rest.startswith(":") or len(rest) < 2:
            return SPFTerm(kind, value=rest.lstrip(":"), error=f"{name} requires a domain", **base)
        return SPFTerm(kind, value=rest[1:], **base)

    # a, mx, ptr: optional domain, a/mx also take dual cidr lengths
    parts = _DOMAIN_CIDR_RE.match(rest)
    if not parts:
        return SPFTerm(kind, value=rest.lstrip(":"), error=f"malformed {name} mechanism '{token}'", **base)
    value, cidr4, cidr6 = parts.group(1) or "", parts.group(2), parts.group(3)
    cidr4 = int(cidr4) if cidr4 is not None else None
    cidr6 = int(cidr6) if cidr6 is not None else None
    error = None
    if kind == TermKind.PTR and (cidr4 is not None or cidr6 is not None):
        error = "ptr takes no cidr length"
    elif (cidr4 is not None and cidr4 > 32) or (cidr6 is not None and cidr6 > 128):
        error = f"cidr length out of range in '{token}'"
    return SPFTerm(kind, value=value, cidr4=cidr4, cidr6=cidr6, error=error, **base)


def parse_record(record: str) -> List[SPFTerm]:
    """Tokenizes a record left to right; order is evaluation precedence."""
    tokens = record.split()
    if not tokens or tokens[0].lower() != "v=spf1":
        raise CheckError(ErrorKind.NO_SPF_RECORD, f"not an SPF record: '{record[:60]}'")
    terms = []
    for token in tokens:
        term = parse_term(token)
        if term is None:
            logger.debug("Ignoring unknown SPF modifier '%s'", token)
            continue
        terms.append(term)
    redirects = [t for t in terms if t.kind == TermKind.REDIRECT]
    if len(redirects) > 1:
        raise CheckError(ErrorKind.UNKNOWN_MECHANISM, "redirect modifier appears more than once")
    return terms


def serialize_terms(terms: List[SPFTerm]) -> str:
    return " ".join(str(t) for t in terms)


def expand_macros(spec: str, context: SPFContext, domain: str) -> str:
    """Expands RFC 7208 §7 macros in a domain-spec."""
    if "%" not in spec:
        return spec

    def letter_value(letter: str) -> str:
        sender = context.sender or f"postmaster@{domain}"
        local, _, sender_domain = sender.rpartition("@")
        ip = context.ip
        if letter == "s":
            return sender
        if letter == "l":
            return local or "postmaster"
        if letter == "o":
            return sender_domain or domain
        if letter == "d":
            return domain
        if letter == "h":
            return context.helo or domain
        if letter in ("i", "c", "v"):
            if ip is None:
                raise ValueError(f"macro %{{{letter}}} needs a client IP")
            if letter == "v":
                return "in-addr" if ip.version == 4 else "ip6"
            if letter == "c" or ip.version == 4:
                return str(ip)
            return ".".join(ip.exploded.replace(":", ""))
        if letter == "p":
            return "unknown"
        if letter == "r":
            return "unknown"
        if letter == "t":
            return "0"
        raise ValueError(f"unknown macro letter '{letter}'")

    def replace(m: re.Match) -> str:
        if m.group(5):
            return "%"
        if m.group(6):
            return " "
        if m.group(7):
            return "%20"
        letter, digits, reverse, delimiters = m.group(1), m.group(2), m.group(3), m.group(4)
        value = letter_value(letter.lower())
        parts = re.split("[" + re.escape(delimiters or ".") + "]", value)
        if reverse:
            parts.reverse()
        if digits:
            parts = parts[-int(digits):] if int(digits) > 0 else parts
        return ".".join(parts)

    if "%" in _MACRO_RE.sub("", spec):
        raise ValueError(f"malformed macro in '{spec}'")
    return _MACRO_RE.sub(replace, spec)


class LookupBudget:
    """
    Shared DNS lookup counter. try_acquire() is an atomic check-then-increment,
    so concurrent include evaluation can never push the count past the limit.
    """

    def __init__(self, limit: int = LOOKUP_LIMIT):
        self.limit = limit
        self.used = 0
        self.exceeded = False
        self.void_lookups = 0
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        with self._lock:
            if self.used >= self.limit:
                self.exceeded = True
                return False
            self.used += 1
            return True

    def record_void(self) -> None:
        with self._lock:
            self.void_lookups += 1


@dataclass
class _Node:
    """One fetched SPF record in the include/redirect tree."""
    domain: str
    record: Optional[str]
    terms: Tuple[SPFTerm, ...] = ()
    statuses: List[TermStatus] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    children: Dict[int, "_Node"] = field(default_factory=dict)
    resolved: Dict[int, List[str]] = field(default_factory=dict)
    error: Optional[str] = None
    result: SPFResult = SPFResult.NEUTRAL
    matched: Optional[str] = None

    def order(self) -> List[int]:
        """Mechanisms left to right, then redirect (applies only if nothing matched)."""
        mechanisms = [i for i, t in enumerate(self.terms) if t.kind != TermKind.REDIRECT]
        redirects = [i for i, t in enumerate(self.terms) if t.kind == TermKind.REDIRECT]
        return mechanisms + redirects

    def has_all(self) -> bool:
        return any(t.kind == TermKind.ALL for t in self.terms)


@dataclass
class _Frame:
    node: _Node
    pending: List[int]
    ancestors: frozenset


@dataclass(frozen=True)
class EvaluatedTerm:
    term: SPFTerm
    status: TermStatus
    note: str = ""

    def to_dict(self) -> dict:
        return {
            "type": self.term.kind.value,
            "value": "spf1" if self.term.kind == TermKind.VERSION else (
                str(self.term) if self.term.kind == TermKind.ALL else (self.term.value or str(self.term))
            ),
            "qualifier": self.term.qualifier,
            "description": describe_term(self.term),
            "status": self.status.value,
            "note": self.note,
        }


@dataclass(frozen=True)
class IncludeSummary:
    domain: str
    record: Optional[str]
    valid: bool
    ip_ranges: Tuple[str, ...]
    via: str

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "record": self.record,
            "valid": self.valid,
            "ip_ranges": list(self.ip_ranges),
            "via": self.via,
        }


@dataclass(frozen=True)
class SPFEvaluationResult:
    domain: str
    record: str
    terms: Tuple[EvaluatedTerm, ...]
    includes: Tuple[IncludeSummary, ...]
    lookup_count: int
    lookup_limit_exceeded: bool
    void_lookup_count: int
    matched_qualifier: SPFResult
    matched_term: Optional[str]
    all_qualifier: Optional[str]
    security_score: int
    recommendations: Tuple[str, ...]
    client_ip: Optional[str] = None

    @property
    def valid(self) -> bool:
        """A void a / mx / exists lookup only counts toward the void limit; a missing include target is an error."""
        return not self.lookup_limit_exceeded and all(
            t.status != TermStatus.INVALID
            and not (t.status == TermStatus.NOT_FOUND and t.term.kind in (TermKind.INCLUDE, TermKind.REDIRECT))
            for t in self.terms
        ) and all(i.valid for i in self.includes)

    def serialize(self) -> str:
        return serialize_terms([t.term for t in self.terms])

    def to_dict(self) -> dict:
        if self.all_qualifier:
            action, description = QUALIFIER_ACTIONS[self.all_qualifier]
        else:
            action, description = "Neutral", "No 'all' mechanism: unmatched sources get a neutral result"
        return {
            "domain": self.domain,
            "record_found": True,
            "record": self.record,
            "valid": self.valid,
            "result": self.matched_qualifier.value,
            "matched_term": self.matched_term,
            "client_ip": self.client_ip,
            "mechanisms": [t.to_dict() for t in self.terms],
            "lookups": {
                "total": self.lookup_count,
                "limit": LOOKUP_LIMIT,
                "warning": self.lookup_count > NEAR_LIMIT or self.lookup_limit_exceeded,
                "void": self.void_lookup_count,
            },
            "lookup_limit_exceeded": self.lookup_limit_exceeded,
            "policy": {
                "qualifier": f"{self.all_qualifier}all" if self.all_qualifier else "",
                "action": action,
                "description": description,
            },
            "includes": [i.to_dict() for i in self.includes],
            "recommendations": list(self.recommendations),
            "security_score": self.security_score,
        }


def describe_term(term: SPFTerm) -> str:
    kind, value = term.kind, term.value
    if kind == TermKind.VERSION:
        return "SPF version 1"
    if kind == TermKind.INCLUDE:
        return f"Include {value}'s SPF record"
    if kind == TermKind.A:
        return f"A/AAAA records of {value or 'the domain'}"
    if kind == TermKind.MX:
        return f"Mail servers (MX) of {value or 'the domain'}"
    if kind in (TermKind.IP4, TermKind.IP6):
        return f"Addresses in {value}"
    if kind == TermKind.EXISTS:
        return f"Match if {value} resolves"
    if kind == TermKind.PTR:
        return f"Reverse DNS within {value or 'the domain'} (deprecated)"
    if kind == TermKind.REDIRECT:
        return f"Use {value}'s SPF policy when nothing matches"
    if kind == TermKind.EXP:
        return f"Explanation text published at {value}"
    action, _ = QUALIFIER_ACTIONS[term.qualifier]
    return f"{action} for all other sources"


def select_spf_record(domain: str, resolver: DNSResolver,
                      deadline: Optional[Deadline] = None) -> DomainRecord:
    """Fetches the single v=spf1 record of a domain."""
    records = resolver.fetch_record(domain, RecordType.SPF, "v=spf1", deadline)
    if not records:
        raise CheckError(ErrorKind.NO_SPF_RECORD, f"no SPF record published for {domain}", domain)
    if len(records) > 1:
        raise CheckError(
            ErrorKind.MULTIPLE_SPF_RECORDS,
            f"{domain} publishes {len(records)} SPF records; RFC 7208 treats this as a permanent error",
            domain,
        )
    return records[0]


class SPFEvaluator:
    """
    Evaluates one domain's SPF chain with an explicit worklist.

    Each frame carries the chain of domains above it, so an include or
    redirect pointing back into its own chain raises SPFLoop. The lookup
    budget is checked before every DNS-querying term; once the 11th lookup
    is requested the walk stops and every remaining term is unevaluated.
    """

    def __init__(self, resolver: DNSResolver, context: Optional[SPFContext] = None,
                 deadline: Optional[Deadline] = None, budget: Optional[LookupBudget] = None):
        self.resolver = resolver
        self.context = context or SPFContext()
        self.deadline = deadline
        self.budget = budget or LookupBudget()
        self._nodes: List[_Node] = []

    def evaluate(self, domain: str) -> SPFEvaluationResult:
        domain = normalize_name(domain)
        top_record = select_spf_record(domain, self.resolver, self.deadline)
        root = self._new_node(domain, top_record.raw_text, parse_record(top_record.raw_text))
        self._walk(root)
        self._match_all()

        result, matched = root.result, root.matched
        all_qualifier = self._effective_all(root)
        includes = tuple(self._summaries(root))
        score = self._score(all_qualifier, includes, root)
        logger.info("SPF %s: %s, %d lookups%s", domain, result.value, self.budget.used,
                    " (limit exceeded)" if self.budget.exceeded else "")
        return SPFEvaluationResult(
            domain=domain,
            record=top_record.raw_text,
            terms=tuple(
                EvaluatedTerm(t, s, n) for t, s, n in zip(root.terms, root.statuses, root.notes)
            ),
            includes=includes,
            lookup_count=self.budget.used,
            lookup_limit_exceeded=self.budget.exceeded,
            void_lookup_count=self.budget.void_lookups,
            matched_qualifier=result,
            matched_term=matched,
            all_qualifier=all_qualifier,
            security_score=score,
            recommendations=tuple(self._recommendations(all_qualifier, includes)),
            client_ip=self.context.client_ip,
        )

    def _new_node(self, domain: str, record: Optional[str], terms=(), error=None) -> _Node:
        node = _Node(domain=domain, record=record, terms=tuple(terms), error=error)
        node.statuses = [TermStatus.UNEVALUATED] * len(node.terms)
        node.notes = [""] * len(node.terms)
        self._nodes.append(node)
        return node

    def _walk(self, root: _Node) -> None:
        stack = [_Frame(root, root.order(), frozenset())]
        while stack:
            frame = stack[-1]
            if not frame.pending:
                stack.pop()
                continue
            index = frame.pending.pop(0)
            node, term = frame.node, frame.node.terms[index]

            if term.error:
                node.statuses[index] = TermStatus.INVALID
                node.notes[index] = term.error
                continue
            if not term.needs_lookup:
                node.statuses[index] = TermStatus.VALID
                continue
            if term.kind == TermKind.REDIRECT and node.has_all():
                node.statuses[index] = TermStatus.IGNORED
                node.notes[index] = "redirect is ignored when an 'all' mechanism is present"
                continue
            if not self.budget.try_acquire():
                logger.warning("SPF lookup limit of %d reached while evaluating %s", LOOKUP_LIMIT, node.domain)
                return
            if self.deadline is not None:
                self.deadline.check(f"SPF evaluation of {node.domain}")

            if term.kind in (TermKind.INCLUDE, TermKind.REDIRECT):
                child = self._descend(frame, index)
                if child is not None:
                    stack.append(_Frame(child, child.order(), frame.ancestors | {node.domain}))
            else:
                self._resolve(node, index)

    def _target(self, node: _Node, term: SPFTerm) -> str:
        return normalize_name(expand_macros(term.value, self.context, node.domain)) if term.value else node.domain

    def _descend(self, frame: _Frame, index: int) -> Optional[_Node]:
        node, term = frame.node, frame.node.terms[index]
        try:
            target = self._target(node, term)
        except ValueError as e:
            node.statuses[index] = TermStatus.INVALID
            node.notes[index] = str(e)
            return None
        if target == node.domain or target in frame.ancestors:
            chain = " -> ".join(sorted(frame.ancestors | {node.domain}))
            raise CheckError(
                ErrorKind.SPF_LOOP,
                f"{term.kind.value} of {target} from {node.domain} loops back into its own chain ({chain})",
                target,
            )
        try:
            record = select_spf_record(target, self.resolver, self.deadline)
            child = self._new_node(target, record.raw_text, parse_record(record.raw_text))
            node.statuses[index] = TermStatus.VALID
        except CheckError as e:
            if e.kind in (ErrorKind.NO_SPF_RECORD, ErrorKind.NXDOMAIN):
                node.statuses[index] = TermStatus.NOT_FOUND
                if e.kind == ErrorKind.NXDOMAIN:
                    self.budget.record_void()
            else:
                node.statuses[index] = TermStatus.INVALID
            node.notes[index] = e.message
            child = self._new_node(target, None, error=e.message)
            node.children[index] = child
            return None
        node.children[index] = child
        return child

    def _resolve(self, node: _Node, index: int) -> None:
        """Performs the DNS query of an a / mx / exists / ptr term."""
        term = node.terms[index]
        try:
            target = self._target(node, term)
        except ValueError as e:
            # Needs the client IP; the lookup is counted but cannot be issued
            node.statuses[index] = TermStatus.VALID
            node.notes[index] = str(e)
            return
        try:
            if term.kind == TermKind.A:
                addresses = self.resolver.fetch_addresses(target, self.deadline)
            elif term.kind == TermKind.MX:
                addresses = []
                for _, host in self.resolver.fetch_mx(target, self.deadline)[:MX_HOST_LIMIT]:
                    addresses.extend(self.resolver.fetch_addresses(host, self.deadline))
            elif term.kind == TermKind.EXISTS:
                if self.context.ip is None:
                    node.statuses[index] = TermStatus.VALID
                    node.notes[index] = "not queried without a client IP"
                    return
                addresses = [a for a in self.resolver.fetch_addresses(target, self.deadline) if ":" not in a]
            else:
                addresses = self._validated_ptr_names(target)
        except CheckError as e:
            if e.kind == ErrorKind.NXDOMAIN:
                addresses = []
            else:
                node.statuses[index] = TermStatus.INVALID
                node.notes[index] = e.message
                return
        node.resolved[index] = addresses
        if not addresses and term.kind != TermKind.PTR:
            self.budget.record_void()
            node.statuses[index] = TermStatus.NOT_FOUND
            node.notes[index] = f"{target} returned no records"
        else:
            node.statuses[index] = TermStatus.VALID

    def _validated_ptr_names(self, target: str) -> List[str]:
        ip = self.context.ip
        if ip is None:
            return []
        validated = []
        for name in self.resolver.fetch_ptr(str(ip), self.deadline)[:MX_HOST_LIMIT]:
            if name == target or name.endswith("." + target):
                if str(ip) in self.resolver.fetch_addresses(name, self.deadline):
                    validated.append(name)
        return validated

    def _matches(self, node: _Node, index: int) -> bool:
        term = node.terms[index]
        ip = self.context.ip
        if term.kind == TermKind.ALL:
            return True
        if term.kind == TermKind.INCLUDE:
            child = node.children.get(index)
            return child is not None and child.error is None and child.result == SPFResult.PASS
        if ip is None:
            return False
        if term.kind in (TermKind.IP4, TermKind.IP6):
            return ip in ipaddress.ip_network(term.value, strict=False)
        if term.kind in (TermKind.A, TermKind.MX):
            prefix = term.cidr4 if ip.version == 4 else term.cidr6
            for address in node.resolved.get(index, []):
                addr = ipaddress.ip_address(address)
                if addr.version != ip.version:
                    continue
                length = prefix if prefix is not None else addr.max_prefixlen
                if ip in ipaddress.ip_network(f"{addr}/{length}", strict=False):
                    return True
            return False
        if term.kind in (TermKind.EXISTS, TermKind.PTR):
            return bool(node.resolved.get(index))
        return False

    def _match_all(self) -> None:
        """Children are created after their parents, so walk the nodes backwards."""
        for node in reversed(self._nodes):
            node.result, node.matched = SPFResult.NEUTRAL, None
            if node.error is not None:
                continue
            decided = False
            for index in node.order():
                term, status = node.terms[index], node.statuses[index]
                if status == TermStatus.UNEVALUATED:
                    decided = True
                    break
                if status in (TermStatus.INVALID, TermStatus.IGNORED):
                    continue
                if term.kind == TermKind.REDIRECT:
                    child = node.children.get(index)
                    if child is not None and child.error is None:
                        node.result, node.matched = child.result, str(term)
                    decided = True
                    break
                if term.is_mechanism and self._matches(node, index):
                    node.result, node.matched = QUALIFIER_RESULTS[term.qualifier], str(term)
                    decided = True
                    break
            if not decided:
                node.result = SPFResult.NEUTRAL

    def _effective_all(self, root: _Node) -> Optional[str]:
        node, seen = root, set()
        while node is not None and node.domain not in seen:
            seen.add(node.domain)
            for index, term in enumerate(node.terms):
                if term.kind == TermKind.ALL and not term.error:
                    return term.qualifier
            redirect = [i for i, t in enumerate(node.terms) if t.kind == TermKind.REDIRECT]
            node = node.children.get(redirect[0]) if redirect else None
        return None

    def _summaries(self, root: _Node) -> List[IncludeSummary]:
        summaries, stack = [], [root]
        while stack:
            node = stack.pop()
            for index in sorted(node.children, reverse=True):
                stack.append(node.children[index])
            if node is root:
                continue
            via = next(
                (str(n.terms[i]) for n in self._nodes for i, c in n.children.items() if c is node), ""
            )
            summaries.append(IncludeSummary(
                domain=node.domain,
                record=node.record,
                # a failed include or redirect that reached its target is the target's own entry
                valid=node.error is None and not any(
                    s == TermStatus.INVALID and index not in node.children
                    for index, s in enumerate(node.statuses)
                ),
                ip_ranges=tuple(t.value for t in node.terms if t.kind in (TermKind.IP4, TermKind.IP6) and not t.error),
                via=via,
            ))
        return summaries

    def _score(self, all_qualifier: Optional[str], includes, root: _Node) -> int:
        score = QUALIFIER_SCORES.get(all_qualifier, MISSING_ALL_SCORE)
        # Each failed include or redirect is counted once: as its target's
        # summary, or as the top-level term when no target could be built
        invalid = sum(1 for i in includes if not i.valid)
        invalid += sum(
            1 for index, (t, s) in enumerate(zip(root.terms, root.statuses))
            if t.kind in (TermKind.INCLUDE, TermKind.REDIRECT) and s == TermStatus.INVALID and index not in root.children
        )
        score -= INVALID_INCLUDE_PENALTY * invalid
        if self.budget.used > NEAR_LIMIT:
            score -= NEAR_LIMIT_PENALTY
        if self.budget.exceeded:
            score -= LIMIT_EXCEEDED_PENALTY
        return max(0, min(100, score))

    def _recommendations(self, all_qualifier: Optional[str], includes) -> List[str]:
        tips = []
        if all_qualifier == "+":
            tips.append("CRITICAL: '+all' authorizes every server on the internet; use '-all' or '~all'")
        elif all_qualifier == "?":
            tips.append("'?all' enforces nothing; move to '~all' and then '-all'")
        elif all_qualifier == "~":
            tips.append("Consider using '-all' instead of '~all' for a stricter policy")
        elif all_qualifier is None:
            tips.append("Add an explicit 'all' mechanism; without it unmatched sources are neutral")
        if self.budget.exceeded:
            tips.append(f"The record needs more than {LOOKUP_LIMIT} DNS lookups; receivers will return permerror")
        elif self.budget.used > NEAR_LIMIT:
            tips.append(f"{self.budget.used} of {LOOKUP_LIMIT} DNS lookups used; flatten includes before adding more")
        if self.budget.void_lookups > VOID_LOOKUP_LIMIT:
            tips.append(f"{self.budget.void_lookups} lookups returned nothing (limit {VOID_LOOKUP_LIMIT})")
        for include in includes:
            if not include.valid:
                tips.append(f"Fix or remove '{include.via}': {include.domain} has no valid SPF record")
        return tips


def evaluate_spf(domain: str, resolver: Optional[DNSResolver] = None, client_ip: Optional[str] = None,
                 sender: Optional[str] = None, helo: Optional[str] = None,
                 deadline: Optional[Deadline] = None) -> SPFEvaluationResult:
    """Evaluates the SPF chain of domain, optionally for a connecting client IP."""
    if client_ip is not None:
        try:
            ipaddress.ip_address(client_ip)
        except ValueError:
            raise ValueError(f"'{client_ip}' is not an IP address")
    context = SPFContext(client_ip=client_ip, sender=sender, helo=helo)
    return SPFEvaluator(resolver or DNSResolver(), context, deadline).evaluate(domain)
