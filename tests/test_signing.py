"""Tests for webhook request signing."""

import hashlib
import hmac
import json

from eventrelay.webhook.signing import (
    HEADER_ID,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    build_signature_headers,
    compute_signature,
    generate_secret,
    serialize_payload,
    verify_signature,
)

SECRET = "whsec_test"
BODY = '{"id":"evt_1","data":{}}'


class TestSigning:
    def test_generate_secret(self):
        secret = generate_secret()
        assert secret.startswith("whsec_")
        assert len(secret) > 40
        assert generate_secret() != secret

    def test_serialize_payload_is_compact(self):
        assert serialize_payload({"a": 1, "b": [1, 2]}) == '{"a":1,"b":[1,2]}'

    def test_serialize_payload_keeps_unicode(self):
        assert serialize_payload({"name": "café"}) == '{"name":"café"}'

    def test_signature_is_hmac_of_timestamp_and_body(self):
        expected = hmac.new(
            SECRET.encode(), f"1700000000.{BODY}".encode(), hashlib.sha256
        ).hexdigest()
        assert compute_signature(SECRET, BODY, 1700000000) == expected

    def test_headers(self):
        headers = build_signature_headers(SECRET, "evt_1", BODY, timestamp=1700000000)
        assert headers["Content-Type"] == "application/json"
        assert headers[HEADER_ID] == "evt_1"
        assert headers[HEADER_TIMESTAMP] == "1700000000"
        assert headers[HEADER_SIGNATURE] == "sha256=" + compute_signature(
            SECRET, BODY, 1700000000
        )


class TestVerifySignature:
    def _headers(self, timestamp: int = 1700000000) -> dict[str, str]:
        return build_signature_headers(SECRET, "evt_1", BODY, timestamp=timestamp)

    def test_valid(self):
        headers = self._headers()
        assert verify_signature(
            SECRET, BODY, headers[HEADER_TIMESTAMP], headers[HEADER_SIGNATURE], now=1700000010
        )

    def test_modified_body(self):
        headers = self._headers()
        tampered = json.dumps({"id": "evt_1", "data": {"x": 1}})
        assert not verify_signature(
            SECRET, tampered, headers[HEADER_TIMESTAMP], headers[HEADER_SIGNATURE], now=1700000000
        )

    def test_wrong_secret(self):
        headers = self._headers()
        assert not verify_signature(
            "whsec_other", BODY, headers[HEADER_TIMESTAMP], headers[HEADER_SIGNATURE],
            now=1700000000,
        )

    def test_timestamp_outside_tolerance(self):
        headers = self._headers()
        assert not verify_signature(
            SECRET, BODY, headers[HEADER_TIMESTAMP], headers[HEADER_SIGNATURE],
            tolerance_seconds=300, now=1700000301,
        )

    def test_malformed_header(self):
        signature = compute_signature(SECRET, BODY, 1700000000)
        assert not verify_signature(SECRET, BODY, 1700000000, signature, now=1700000000)
        assert not verify_signature(SECRET, BODY, "soon", "sha256=" + signature)
