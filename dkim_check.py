"""
Email Auth Inspector — DKIM Evaluator
Fetches selector records, derives key size from the key material itself and,
when a signed message is supplied, re-checks the body hash and the header
signature. Hash or signature mismatches are reported, never raised.

Message parsing, canonicalization and the final verdict come from dkimpy;
the body hash and header signature are also checked separately so each can
be reported on its own.
"""

import base64
import binascii
import hashlib
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple, Union

import dkim
from dkim.canonicalization import CanonicalizationPolicy, InvalidCanonicalizationPolicyError
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, padding, rsa

from dns_resolver import DNSResolver, DomainRecord, RecordType, normalize_name, parse_tag_list
from errors import CheckError, Deadline, ErrorKind

logger = logging.getLogger(__name__)

CRITICAL_KEY_PENALTY = 50
WEAK_KEY_PENALTY = 20
EXPIRED_PENALTY = 20
INVALID_SIGNATURE_PENALTY = 40
TESTING_PENALTY = 5
SHA1_PENALTY = 10

HASHES = {"sha1": hashes.SHA1, "sha256": hashes.SHA256}


@dataclass(frozen=True)
class DKIMKeyRecord:
    selector: str
    domain: str
    algorithm: str
    key_type: str
    key_size_bits: int
    public_key_bytes: bytes
    hash_algorithms: Tuple[str, ...] = ()
    flags: Tuple[str, ...] = ()
    notes: str = ""
    expires_at: Optional[datetime] = None
    record_text: str = ""

    @property
    def testing(self) -> bool:
        return "y" in self.flags

    @property
    def name(self) -> str:
        return f"{self.selector}._domainkey.{self.domain}"

    def load_public_key(self):
        if self.algorithm == "ed25519":
            return ed25519.Ed25519PublicKey.from_public_bytes(self.public_key_bytes)
        return serialization.load_der_public_key(self.public_key_bytes)

    def to_dict(self) -> dict:
        return {
            "algorithm": self.algorithm,
            "key_type": self.key_type,
            "key_size": self.key_size_bits,
            "valid": True,
            "expires": self.expires_at.isoformat() if self.expires_at else None,
            "hash_algorithms": list(self.hash_algorithms),
            "testing": self.testing,
        }


def _load_key(algorithm: str, material: bytes):
    """Returns (key, raw bytes, size in bits) or raises MalformedPublicKey."""
    try:
        if algorithm == "ed25519":
            if len(material) == 32:
                key = ed25519.Ed25519PublicKey.from_public_bytes(material)
            else:
                key = serialization.load_der_public_key(material)
            if not isinstance(key, ed25519.Ed25519PublicKey):
                raise CheckError(ErrorKind.MALFORMED_PUBLIC_KEY, "k=ed25519 but p= holds a different key type")
            raw = key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
            return key, raw, 256
        key = serialization.load_der_public_key(material)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise CheckError(ErrorKind.MALFORMED_PUBLIC_KEY, f"p= is not a valid {algorithm} public key: {e}")
    if not isinstance(key, rsa.RSAPublicKey):
        raise CheckError(ErrorKind.MALFORMED_PUBLIC_KEY, "k=rsa but p= holds a different key type")
    der = key.public_bytes(serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo)
    return key, der, key.key_size


def parse_key_record(selector: str, domain: str, text: str) -> DKIMKeyRecord:
    """Parses a selector record; key size is read from the decoded key, not from any tag."""
    try:
        tags = parse_tag_list(text)
    except ValueError as e:
        raise CheckError(ErrorKind.MALFORMED_PUBLIC_KEY, str(e), domain)
    version = tags.get("v")
    if version is not None and version != "DKIM1":
        raise CheckError(ErrorKind.MALFORMED_PUBLIC_KEY, f"unsupported DKIM key record version '{version}'", domain)

    algorithm = tags.get("k", "rsa").lower()
    if algorithm not in ("rsa", "ed25519"):
        raise CheckError(ErrorKind.MALFORMED_PUBLIC_KEY, f"unsupported key type k={algorithm}", domain)

    if "p" not in tags:
        raise CheckError(ErrorKind.MALFORMED_PUBLIC_KEY, "record has no p= tag", domain)
    encoded = re.sub(r"\s+", "", tags["p"])
    if not encoded:
        raise CheckError(ErrorKind.MALFORMED_PUBLIC_KEY, "key has been revoked (empty p= tag)", domain)
    try:
        material = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CheckError(ErrorKind.MALFORMED_PUBLIC_KEY, f"p= is not valid base64: {e}", domain)

    _, raw, size = _load_key(algorithm, material)
    return DKIMKeyRecord(
        selector=selector,
        domain=domain,
        algorithm=algorithm,
        key_type="Ed25519" if algorithm == "ed25519" else "RSA",
        key_size_bits=size,
        public_key_bytes=raw,
        hash_algorithms=tuple(h.strip().lower() for h in tags.get("h", "").split(":") if h.strip()),
        flags=tuple(f.strip().lower() for f in tags.get("t", "").split(":") if f.strip()),
        notes=tags.get("n", ""),
        record_text=text.strip(),
    )


def fetch_key_record(domain: str, selector: str, resolver: DNSResolver,
                     deadline: Optional[Deadline] = None) -> DomainRecord:
    name = f"{selector}._domainkey.{domain}"
    try:
        texts = resolver.fetch_txt(name, deadline)
    except CheckError as e:
        if e.kind == ErrorKind.NXDOMAIN:
            raise CheckError(ErrorKind.NO_DKIM_RECORD, f"no DKIM record at {name}", domain)
        raise
    candidates = sorted(t.strip() for t in texts if "p=" in t or t.strip().startswith("v=DKIM1"))
    if not candidates:
        raise CheckError(ErrorKind.NO_DKIM_RECORD, f"no DKIM record at {name}", domain)
    if len(candidates) > 1:
        logger.warning("%d DKIM records at %s, using the first", len(candidates), name)
    return DomainRecord(normalize_name(name), RecordType.DKIM, candidates[0], datetime.now(timezone.utc))


# -------- Message canonicalization (RFC 6376 §3.4) --------

HeaderField = Tuple[bytes, bytes]


def _policy(header_canon: str, body_canon: str) -> CanonicalizationPolicy:
    return CanonicalizationPolicy.from_c_value(f"{header_canon}/{body_canon}".encode("ascii"))


def split_message(message: Union[str, bytes]) -> Tuple[List[HeaderField], bytes]:
    """
    Returns ([(name, value)], body). Values keep the text after the colon
    including folding and the final CRLF; the body uses CRLF line endings.
    Raises dkim.MessageFormatError for a header line that is not a field.
    """
    if isinstance(message, str):
        message = message.encode("utf-8")
    headers, body = dkim.rfc822_parse(message)
    return [(name, value) for name, value in headers], body


def canonicalize_header(raw: bytes, method: str) -> bytes:
    name, _, value = raw.partition(b":")
    [(name, value)] = _policy(method, "simple").canonicalize_headers([(name, value)])
    return name + b":" + value


def canonicalize_body(body: bytes, method: str) -> bytes:
    return _policy("simple", method).canonicalize_body(body)


@dataclass(frozen=True)
class DKIMSignature:
    """A parsed DKIM-Signature header field."""
    domain: str
    selector: str
    algorithm: str
    hash_algorithm: str
    header_canon: str
    body_canon: str
    signed_headers: Tuple[str, ...]
    body_hash: bytes
    signature: bytes
    field: HeaderField
    identity: str = ""
    body_length: Optional[int] = None
    timestamp: Optional[datetime] = None
    expires_at: Optional[datetime] = None


def _epoch(value: Optional[str]) -> Optional[datetime]:
    if not value or not value.strip().isdigit():
        return None
    return datetime.fromtimestamp(int(value.strip()), tz=timezone.utc)


def parse_signature(header: HeaderField) -> DKIMSignature:
    """Raises ValueError when a required tag is missing or malformed."""
    tags = parse_tag_list(header[1].decode("ascii", errors="replace"))
    missing = [t for t in ("v", "a", "b", "bh", "d", "h", "s") if t not in tags]
    if missing:
        raise ValueError(f"DKIM-Signature lacks required tags: {', '.join(missing)}")
    if tags["v"] != "1":
        raise ValueError(f"unsupported DKIM-Signature version v={tags['v']}")

    algorithm = tags["a"].lower()
    key_algorithm, _, hash_algorithm = algorithm.partition("-")
    if key_algorithm not in ("rsa", "ed25519") or hash_algorithm not in HASHES:
        raise ValueError(f"unsupported signing algorithm a={algorithm}")

    try:
        policy = CanonicalizationPolicy.from_c_value(tags.get("c", "simple/simple").lower().encode("ascii"))
    except InvalidCanonicalizationPolicyError:
        raise ValueError(f"unknown canonicalization c={tags.get('c')}")

    try:
        signature = base64.b64decode(re.sub(r"\s+", "", tags["b"]))
        body_hash = base64.b64decode(re.sub(r"\s+", "", tags["bh"]))
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"b= or bh= is not valid base64: {e}")

    length = tags.get("l")
    return DKIMSignature(
        domain=normalize_name(tags["d"]),
        selector=tags["s"].strip(),
        algorithm=key_algorithm,
        hash_algorithm=hash_algorithm,
        header_canon=policy.header_algorithm.name.decode(),
        body_canon=policy.body_algorithm.name.decode(),
        signed_headers=tuple(h.strip().lower() for h in tags["h"].split(":") if h.strip()),
        body_hash=body_hash,
        signature=signature,
        field=header,
        identity=tags.get("i", ""),
        body_length=int(length) if length and length.isdigit() else None,
        timestamp=_epoch(tags.get("t")),
        expires_at=_epoch(tags.get("x")),
    )


@dataclass(frozen=True)
class DKIMSignatureAnalysis:
    canonicalization: Tuple[str, str]
    hash_algorithm: str
    body_hash_valid: bool
    header_hash_valid: bool
    signature_valid: bool
    signing_domain: str = ""
    selector: str = ""
    expired: bool = False
    expires_at: Optional[datetime] = None
    notes: Tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "canonicalization": "/".join(self.canonicalization),
            "hash_algorithm": self.hash_algorithm,
            "signature_valid": self.signature_valid,
            "body_hash_valid": self.body_hash_valid,
            "header_hash_valid": self.header_hash_valid,
            "signing_domain": self.signing_domain,
            "selector": self.selector,
            "expired": self.expired,
            "expires": self.expires_at.isoformat() if self.expires_at else None,
            "notes": list(self.notes),
        }


class _Capture:
    """Collects what dkimpy feeds to a hash object."""

    def __init__(self):
        self.data = b""

    def update(self, chunk: bytes) -> None:
        self.data += chunk


def _header_hash_input(sig: DKIMSignature, fields: List[HeaderField]) -> bytes:
    """Signed header fields in h= order, each instance taken bottom-up, then the signature itself."""
    policy = _policy(sig.header_canon, sig.body_canon)
    capture = _Capture()
    dkim.hash_headers(capture, policy, policy.canonicalize_headers(fields),
                      [h.encode("ascii", errors="replace") for h in sig.signed_headers], sig.field, None)
    return capture.data


def _verify(key, sig: DKIMSignature, data: bytes) -> bool:
    try:
        if isinstance(key, rsa.RSAPublicKey) and sig.algorithm == "rsa":
            key.verify(sig.signature, data, padding.PKCS1v15(), HASHES[sig.hash_algorithm]())
            return True
        if isinstance(key, ed25519.Ed25519PublicKey) and sig.algorithm == "ed25519":
            # RFC 8463: Ed25519 signs the SHA-256 digest of the header data
            key.verify(sig.signature, hashlib.sha256(data).digest())
            return True
    except InvalidSignature:
        return False
    return False


def key_lookup(key_record: DKIMKeyRecord, resolver: Optional[DNSResolver] = None,
               deadline: Optional[Deadline] = None) -> Callable:
    """
    dkimpy dnsfunc: answers for key_record's own name from the record already
    fetched, and for any other selector through resolver.
    """
    def dnsfunc(name, timeout=5):
        if isinstance(name, bytes):
            name = name.decode("ascii", errors="replace")
        name = normalize_name(name)
        if name == key_record.name and key_record.record_text:
            return key_record.record_text.encode("utf-8")
        selector, sep, domain = name.partition("._domainkey.")
        if resolver is None or not sep:
            return None
        try:
            return fetch_key_record(domain, selector, resolver, deadline).raw_text.encode("utf-8")
        except CheckError as e:
            logger.debug("Key lookup for %s failed: %s", name, e)
            return None
    return dnsfunc


def _dkimpy_verdict(message: bytes, index: int, dnsfunc: Callable) -> Tuple[bool, Optional[str]]:
    try:
        return bool(dkim.DKIM(message, logger=logger).verify(idx=index, dnsfunc=dnsfunc)), None
    except dkim.DKIMException as e:
        return False, str(e)


def analyze_signature(message: Union[str, bytes], key_record: DKIMKeyRecord, now: Optional[datetime] = None,
                      resolver: Optional[DNSResolver] = None,
                      deadline: Optional[Deadline] = None) -> Optional[DKIMSignatureAnalysis]:
    """
    Re-verifies the DKIM-Signature of message made with key_record's selector.
    Returns None when the message carries no DKIM-Signature at all.
    """
    if isinstance(message, str):
        message = message.encode("utf-8")
    try:
        fields, body = split_message(message)
    except dkim.MessageFormatError as e:
        return DKIMSignatureAnalysis(("simple", "simple"), "sha256", False, False, False,
                                     notes=(f"message headers could not be parsed: {e}",))
    raw_signatures = [f for f in fields if f[0].lower() == b"dkim-signature"]
    if not raw_signatures:
        return None

    # dkimpy addresses signatures by their position among DKIM-Signature fields
    parsed, errors = [], []
    for index, header in enumerate(raw_signatures):
        try:
            parsed.append((index, parse_signature(header)))
        except ValueError as e:
            errors.append(str(e))
    matching = [(i, s) for i, s in parsed if s.domain == key_record.domain and s.selector == key_record.selector]
    chosen = (matching or parsed or [None])[0]
    if chosen is None:
        return DKIMSignatureAnalysis(("simple", "simple"), "sha256", False, False, False, notes=tuple(errors))
    index, sig = chosen

    notes = list(errors)
    if not matching:
        notes.append(f"no signature for {key_record.name}; checked d={sig.domain} s={sig.selector}")

    canonical_body = canonicalize_body(body, sig.body_canon)
    if sig.body_length is not None:
        if sig.body_length < len(canonical_body):
            notes.append(f"l={sig.body_length} leaves {len(canonical_body) - sig.body_length} body bytes unsigned")
        canonical_body = canonical_body[:sig.body_length]
    digest = hashlib.new(sig.hash_algorithm, canonical_body).digest()
    body_hash_valid = digest == sig.body_hash

    header_hash_valid = False
    try:
        key = key_record.load_public_key()
        header_hash_valid = _verify(key, sig, _header_hash_input(sig, fields))
    except (ValueError, UnsupportedAlgorithm) as e:
        notes.append(f"public key could not be loaded: {e}")

    if key_record.hash_algorithms and sig.hash_algorithm not in key_record.hash_algorithms:
        notes.append(f"key only allows h={':'.join(key_record.hash_algorithms)}, signature uses {sig.hash_algorithm}")
        header_hash_valid = False
    if "from" not in sig.signed_headers:
        notes.append("h= does not include From")

    now = now or datetime.now(timezone.utc)
    expired = sig.expires_at is not None and sig.expires_at < now
    if expired:
        notes.append(f"signature expired at {sig.expires_at.isoformat()}")
    if not body_hash_valid:
        notes.append("computed body hash does not match bh=")
    if not header_hash_valid:
        notes.append("header signature does not verify with the published key")

    verified, reason = _dkimpy_verdict(message, index, key_lookup(key_record, resolver, deadline))
    if not verified and body_hash_valid and header_hash_valid and not expired:
        notes.append(f"rejected by dkimpy: {reason or 'signature did not verify'}")

    return DKIMSignatureAnalysis(
        canonicalization=(sig.header_canon, sig.body_canon),
        hash_algorithm=sig.hash_algorithm,
        body_hash_valid=body_hash_valid,
        header_hash_valid=header_hash_valid,
        signature_valid=verified and body_hash_valid and header_hash_valid and not expired,
        signing_domain=sig.domain,
        selector=sig.selector,
        expired=expired,
        expires_at=sig.expires_at,
        notes=tuple(notes),
    )


@dataclass(frozen=True)
class DKIMEvaluationResult:
    domain: str
    selector: str
    record: DomainRecord
    key: DKIMKeyRecord
    signature: Optional[DKIMSignatureAnalysis]
    validation_tests: Tuple[Dict[str, str], ...]
    security_score: int
    recommendations: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "selector": self.selector,
            "record_found": True,
            "dkim_record": self.record.raw_text,
            "public_key": self.key.to_dict(),
            "signature_analysis": self.signature.to_dict() if self.signature else None,
            "validation_tests": [dict(t) for t in self.validation_tests],
            "recommendations": list(self.recommendations),
            "security_score": self.security_score,
        }


def score_dkim(key: DKIMKeyRecord, analysis: Optional[DKIMSignatureAnalysis]) -> int:
    score = 100
    if key.algorithm == "rsa":
        if key.key_size_bits < 1024:
            score -= CRITICAL_KEY_PENALTY
        elif key.key_size_bits < 2048:
            score -= WEAK_KEY_PENALTY
    if key.testing:
        score -= TESTING_PENALTY
    if key.hash_algorithms == ("sha1",):
        score -= SHA1_PENALTY
    if analysis is not None:
        if analysis.expired:
            score -= EXPIRED_PENALTY
        if not analysis.signature_valid:
            score -= INVALID_SIGNATURE_PENALTY
        if analysis.hash_algorithm == "sha1" and key.hash_algorithms != ("sha1",):
            score -= SHA1_PENALTY
    return max(0, min(100, score))


def _validation_tests(key: DKIMKeyRecord, analysis: Optional[DKIMSignatureAnalysis]):
    tests = [
        {"test": "DKIM Record Exists", "status": "pass", "details": f"Record found for selector '{key.selector}'"},
        {"test": "Public Key Format", "status": "pass", "details": f"{key.key_type} key decoded successfully"},
    ]
    if key.algorithm == "ed25519":
        tests.append({"test": "Key Strength", "status": "pass", "details": "Ed25519 key"})
    elif key.key_size_bits < 1024:
        tests.append({"test": "Key Strength", "status": "fail", "details": f"{key.key_size_bits}-bit RSA key is breakable"})
    elif key.key_size_bits < 2048:
        tests.append({"test": "Key Strength", "status": "warning", "details": f"{key.key_size_bits}-bit RSA key; 2048 bits recommended"})
    else:
        tests.append({"test": "Key Strength", "status": "pass", "details": f"{key.key_size_bits}-bit RSA key"})
    if key.testing:
        tests.append({"test": "Testing Mode", "status": "warning", "details": "t=y: receivers may ignore failures"})
    if analysis is not None:
        tests.append({
            "test": "Body Hash",
            "status": "pass" if analysis.body_hash_valid else "fail",
            "details": "Body hash matches bh=" if analysis.body_hash_valid else "Body was modified or canonicalized differently",
        })
        tests.append({
            "test": "Signature Verification",
            "status": "pass" if analysis.signature_valid else "fail",
            "details": "Signature verified" if analysis.signature_valid else "; ".join(analysis.notes) or "Signature invalid",
        })
    return tuple(tests)


def evaluate_dkim(domain: str, selector: str, resolver: Optional[DNSResolver] = None,
                  message: Union[str, bytes, None] = None, deadline: Optional[Deadline] = None,
                  now: Optional[datetime] = None) -> DKIMEvaluationResult:
    """Looks up selector._domainkey.domain and optionally verifies a signed message against it."""
    domain = normalize_name(domain)
    selector = selector.strip()
    resolver = resolver or DNSResolver()
    record = fetch_key_record(domain, selector, resolver, deadline)
    key = parse_key_record(selector, domain, record.raw_text)

    analysis = analyze_signature(message, key, now, resolver, deadline) if message else None
    if analysis is not None and analysis.expires_at is not None:
        key = replace(key, expires_at=analysis.expires_at)

    recommendations = []
    if key.algorithm == "rsa" and key.key_size_bits < 2048:
        recommendations.append(f"Rotate to a 2048-bit RSA key (currently {key.key_size_bits} bits)")
    if key.testing:
        recommendations.append("Remove t=y once signing has been verified")
    if analysis is not None and not analysis.signature_valid:
        recommendations.append("Check that outbound mail is signed after the last content modification")

    logger.info("DKIM %s._domainkey.%s: %s %d-bit%s", selector, domain, key.key_type, key.key_size_bits,
                "" if analysis is None else f", signature {'valid' if analysis.signature_valid else 'invalid'}")
    return DKIMEvaluationResult(
        domain=domain,
        selector=selector,
        record=record,
        key=key,
        signature=analysis,
        validation_tests=_validation_tests(key, analysis),
        security_score=score_dkim(key, analysis),
        recommendations=tuple(recommendations),
    )
