"""
Tests for the DKIM evaluator.
"""

import base64
from datetime import datetime, timezone

import dkim
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa

from dkim_check import (
    analyze_signature,
    canonicalize_body,
    canonicalize_header,
    evaluate_dkim,
    key_lookup,
    parse_key_record,
    score_dkim,
)
from errors import CheckError, ErrorKind

MESSAGE = (
    b"From: Alice <alice@example.com>\r\n"
    b"To: bob@example.net\r\n"
    b"Subject: Quarterly report\r\n"
    b"Date: Mon, 02 Jun 2025 09:00:00 +0000\r\n"
    b"\r\n"
    b"Hello Bob,\r\n"
    b"\r\n"
    b"The numbers are in.\r\n"
)


class TestKeyRecord:

    def test_key_size_comes_from_key_material(self, rsa_private_key, key_record):
        # n= claims 1024 bits; the decoded modulus is what counts
        record = parse_key_record("sel", "example.com", key_record(rsa_private_key, "n=1024-bit key; "))
        assert record.key_size_bits == 2048
        assert record.algorithm == "rsa"

    def test_pkcs1_encoded_rsa_key(self, rsa_private_key):
        der = rsa_private_key.public_key().public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.PKCS1
        )
        record = parse_key_record("sel", "example.com", f"v=DKIM1; p={base64.b64encode(der).decode()}")
        assert record.key_size_bits == 2048

    def test_small_rsa_key_is_penalized(self):
        small = rsa.generate_private_key(public_exponent=65537, key_size=1024)
        der = small.public_key().public_bytes(
            serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
        )
        record = parse_key_record("sel", "example.com", f"v=DKIM1; k=rsa; p={base64.b64encode(der).decode()}")
        assert record.key_size_bits == 1024
        assert score_dkim(record, None) == 80

    def test_ed25519_key(self):
        raw = ed25519.Ed25519PrivateKey.generate().public_key().public_bytes(
            serialization.Encoding.Raw, serialization.PublicFormat.Raw
        )
        record = parse_key_record("ed", "example.com", f"v=DKIM1; k=ed25519; p={base64.b64encode(raw).decode()}")
        assert record.key_type == "Ed25519"
        assert record.key_size_bits == 256

    @pytest.mark.parametrize("text", [
        "v=DKIM1; k=rsa; p=not*base64",
        "v=DKIM1; k=rsa; p=" + base64.b64encode(b"\x30\x82\x01\x22garbage").decode(),
        "v=DKIM1; k=rsa; p=",
        "v=DKIM1; k=rsa",
        "v=DKIM1; k=dsa; p=AAAA",
        "v=DKIM1; k=rsa; k=ed25519; p=AAAA",
    ])
    def test_malformed_keys(self, text):
        with pytest.raises(CheckError) as exc:
            parse_key_record("sel", "example.com", text)
        assert exc.value.kind == ErrorKind.MALFORMED_PUBLIC_KEY

    def test_testing_flag(self, rsa_private_key, key_record):
        record = parse_key_record("sel", "example.com", key_record(rsa_private_key, "t=y; "))
        assert record.testing
        assert score_dkim(record, None) == 95


class TestCanonicalization:

    def test_relaxed_header(self):
        assert canonicalize_header(b"A: X\r\n", "relaxed") == b"a:X\r\n"
        assert canonicalize_header(b"B : Y\t\r\n\tZ  \r\n", "relaxed") == b"b:Y Z\r\n"

    def test_bodies(self):
        body = b" C \r\nD \t E\r\n\r\n\r\n"
        assert canonicalize_body(body, "relaxed") == b" C\r\nD E\r\n"
        assert canonicalize_body(body, "simple") == b" C \r\nD \t E\r\n"

    def test_empty_body(self):
        assert canonicalize_body(b"", "simple") == b"\r\n"
        assert canonicalize_body(b"", "relaxed") == b""


class TestSignatureVerification:

    def test_valid_signature(self, rsa_private_key, key_record, signed_message):
        key = parse_key_record("sel", "example.com", key_record(rsa_private_key))
        analysis = analyze_signature(signed_message(MESSAGE, rsa_private_key, "example.com", "sel"), key)
        assert analysis.body_hash_valid
        assert analysis.header_hash_valid
        assert analysis.signature_valid
        assert analysis.canonicalization == ("relaxed", "relaxed")

    def test_simple_canonicalization(self, rsa_private_key, key_record, signed_message):
        key = parse_key_record("sel", "example.com", key_record(rsa_private_key))
        message = signed_message(MESSAGE, rsa_private_key, "example.com", "sel", canon="simple/simple")
        assert analyze_signature(message, key).signature_valid

    def test_tampered_body_fails_without_raising(self, rsa_private_key, key_record, signed_message):
        key = parse_key_record("sel", "example.com", key_record(rsa_private_key))
        message = signed_message(MESSAGE, rsa_private_key, "example.com", "sel")
        analysis = analyze_signature(message.replace(b"numbers are in", b"numbers are out"), key)
        assert not analysis.body_hash_valid
        assert analysis.header_hash_valid
        assert not analysis.signature_valid

    def test_tampered_subject_breaks_header_signature(self, rsa_private_key, key_record, signed_message):
        key = parse_key_record("sel", "example.com", key_record(rsa_private_key))
        message = signed_message(MESSAGE, rsa_private_key, "example.com", "sel")
        analysis = analyze_signature(message.replace(b"Quarterly report", b"Urgent wire transfer"), key)
        assert analysis.body_hash_valid
        assert not analysis.header_hash_valid
        assert not analysis.signature_valid

    def test_wrong_key(self, rsa_private_key, signed_message, key_record):
        other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        key = parse_key_record("sel", "example.com", key_record(other))
        analysis = analyze_signature(signed_message(MESSAGE, rsa_private_key, "example.com", "sel"), key)
        assert not analysis.signature_valid

    def test_expired_signature(self, rsa_private_key, key_record, signed_message):
        key = parse_key_record("sel", "example.com", key_record(rsa_private_key))
        message = signed_message(MESSAGE, rsa_private_key, "example.com", "sel", expires=1700000000)
        analysis = analyze_signature(message, key, now=datetime(2025, 1, 1, tzinfo=timezone.utc))
        assert analysis.body_hash_valid and analysis.header_hash_valid
        assert analysis.expired
        assert not analysis.signature_valid

    def test_unsigned_message(self, rsa_private_key, key_record):
        key = parse_key_record("sel", "example.com", key_record(rsa_private_key))
        assert analyze_signature(MESSAGE, key) is None

    def test_signature_made_by_dkimpy(self, rsa_private_key, key_record):
        pem = rsa_private_key.private_bytes(
            serialization.Encoding.PEM, serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
        header = dkim.sign(MESSAGE, b"sel", b"example.com", pem, canonicalize=(b"relaxed", b"simple"),
                           include_headers=[b"from", b"to", b"subject"])
        key = parse_key_record("sel", "example.com", key_record(rsa_private_key))
        analysis = analyze_signature(header + MESSAGE, key)
        assert analysis.canonicalization == ("relaxed", "simple")
        assert analysis.body_hash_valid and analysis.header_hash_valid
        assert analysis.signature_valid

    def test_unparseable_headers_do_not_raise(self, rsa_private_key, key_record):
        key = parse_key_record("sel", "example.com", key_record(rsa_private_key))
        analysis = analyze_signature(b"DKIM-Signature: v=1\r\n\x01bad header line\r\n\r\nbody\r\n", key)
        assert not analysis.signature_valid
        assert analysis.notes


class TestKeyLookup:

    def test_known_selector_is_answered_from_record(self, rsa_private_key, key_record):
        text = key_record(rsa_private_key)
        lookup = key_lookup(parse_key_record("sel", "example.com", text))
        assert lookup(b"sel._domainkey.example.com.") == text.encode()
        assert lookup(b"other._domainkey.example.com.") is None

    def test_other_selectors_go_through_resolver(self, make_resolver, rsa_private_key, key_record):
        text = key_record(rsa_private_key)
        resolver = make_resolver(txt={"other._domainkey.example.com": text},
                                 nxdomain=["gone._domainkey.example.com"])
        lookup = key_lookup(parse_key_record("sel", "example.com", text), resolver)
        assert lookup(b"other._domainkey.example.com.") == text.encode()
        assert lookup(b"gone._domainkey.example.com.") is None


class TestEvaluateDKIM:

    def test_missing_record(self, make_resolver):
        resolver = make_resolver(nxdomain=["sel._domainkey.example.com"])
        with pytest.raises(CheckError) as exc:
            evaluate_dkim("example.com", "sel", resolver)
        assert exc.value.kind == ErrorKind.NO_DKIM_RECORD

    def test_lookup_only(self, make_resolver, rsa_private_key, key_record):
        resolver = make_resolver(txt={"sel._domainkey.example.com": key_record(rsa_private_key)})
        out = evaluate_dkim("example.com", "sel", resolver).to_dict()
        assert out["record_found"] is True
        assert out["public_key"]["key_size"] == 2048
        assert out["signature_analysis"] is None
        assert out["security_score"] == 100

    def test_with_signed_message(self, make_resolver, rsa_private_key, key_record, signed_message):
        resolver = make_resolver(txt={"sel._domainkey.example.com": key_record(rsa_private_key)})
        message = signed_message(MESSAGE, rsa_private_key, "example.com", "sel")
        out = evaluate_dkim("example.com", "sel", resolver, message=message).to_dict()
        assert out["signature_analysis"]["signature_valid"] is True
        assert out["signature_analysis"]["body_hash_valid"] is True

    def test_invalid_signature_costs_score(self, make_resolver, rsa_private_key, key_record, signed_message):
        resolver = make_resolver(txt={"sel._domainkey.example.com": key_record(rsa_private_key)})
        message = signed_message(MESSAGE, rsa_private_key, "example.com", "sel").replace(b"Bob,", b"Eve,")
        result = evaluate_dkim("example.com", "sel", resolver, message=message)
        assert result.signature is not None and not result.signature.signature_valid
        assert result.security_score == 60
