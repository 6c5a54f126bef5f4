"""
Unit tests for SigV4 request signing.

The expected values come from the AWS Signature Version 4 test suite
(get-vanilla, get-header-value-trim) and the signing key example in the
AWS docs, so a pass here means real servers will accept our signatures.
"""

import hashlib
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlsplit

import pytest

from storage_pipeline.core.jobs.models import Credentials
from storage_pipeline.infrastructure.storage.signer import (
    EMPTY_PAYLOAD_HASH,
    build_authorization,
    canonical_query,
    canonical_request,
    canonicalize_headers,
    derive_signing_key,
    format_timestamps,
    hash_payload,
    presign_url,
    sign_request,
)

AWS_EXAMPLE = Credentials(
    endpoint="https://example.amazonaws.com",
    access_key_id="AKIDEXAMPLE",
    secret_access_key="wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY",
)

VANILLA_DATE = "20150830T123600Z"
VANILLA_HEADERS = {
    "Host": "example.amazonaws.com",
    "X-Amz-Date": VANILLA_DATE,
}

FIXED_NOW = datetime(2024, 5, 1, 9, 30, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------

class TestTimestamps:
    """Tests for timestamp formatting."""

    def test_amz_date_and_date_stamp(self):
        amz_date, date_stamp = format_timestamps(FIXED_NOW)
        assert amz_date == "20240501T093000Z"
        assert date_stamp == "20240501"

    def test_converts_to_utc(self):
        """Signing time is always UTC regardless of the caller's zone."""
        from datetime import timedelta
        local = datetime(2024, 5, 1, 11, 30, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamps(local)[0] == "20240501T093000Z"


class TestPayloadHash:
    def test_empty_body_hashes_zero_bytes(self):
        assert hash_payload(b"") == EMPTY_PAYLOAD_HASH
        assert EMPTY_PAYLOAD_HASH == (
            "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        )

    def test_body_hash(self):
        assert hash_payload(b"hello") == hashlib.sha256(b"hello").hexdigest()


class TestCanonicalHeaders:
    """Header canonicalization must match what servers compute."""

    def test_names_lowercased_and_sorted(self):
        canonical, signed = canonicalize_headers({
            "X-Amz-Date": VANILLA_DATE,
            "Host": "example.amazonaws.com",
            "Content-Type": "text/plain",
        })
        assert signed == "content-type;host;x-amz-date"
        assert canonical == (
            "content-type:text/plain\n"
            "host:example.amazonaws.com\n"
            f"x-amz-date:{VANILLA_DATE}\n"
        )

    def test_values_trimmed_and_whitespace_collapsed(self):
        canonical, _ = canonicalize_headers({"My-Header": "  value   with   spaces  "})
        assert canonical == "my-header:value with spaces\n"


class TestCanonicalQuery:
    def test_sorted_and_encoded(self):
        assert canonical_query("b=2&a=1&c=x y") == "a=1&b=2&c=x%20y"

    def test_empty(self):
        assert canonical_query("") == ""


class TestAwsTestSuite:
    """Published AWS SigV4 test vectors."""

    def test_get_vanilla_canonical_request(self):
        request, signed = canonical_request(
            "GET", "https://example.amazonaws.com/", VANILLA_HEADERS, EMPTY_PAYLOAD_HASH
        )
        assert signed == "host;x-amz-date"
        assert hashlib.sha256(request.encode()).hexdigest() == (
            "bb579772317eb040ac9ed261061d46c1f17a8133879d6129b6e1c25292927e63"
        )

    def test_get_vanilla_authorization(self):
        authorization = build_authorization(
            "GET",
            "https://example.amazonaws.com/",
            VANILLA_HEADERS,
            EMPTY_PAYLOAD_HASH,
            AWS_EXAMPLE,
            VANILLA_DATE,
            region="us-east-1",
            service="service",
        )
        assert authorization == (
            "AWS4-HMAC-SHA256 "
            "Credential=AKIDEXAMPLE/20150830/us-east-1/service/aws4_request, "
            "SignedHeaders=host;x-amz-date, "
            "Signature=5fa00fa31553b73ebf1942676e86291e8372ff2a2260956d9b8aae1d763fbf31"
        )

    def test_get_header_value_trim(self):
        """Untrimmed values with inner whitespace runs (get-header-value-trim)."""
        headers = {
            **VANILLA_HEADERS,
            "My-Header1": " value1",
            "My-Header2": ' "a   b   c"',
        }

        request, signed = canonical_request(
            "GET", "https://example.amazonaws.com/", headers, EMPTY_PAYLOAD_HASH
        )
        assert 'my-header2:"a b c"\n' in request
        assert hashlib.sha256(request.encode()).hexdigest() == (
            "a726db9b0df21c14f559d0a978e563112acb1b9e05476f0a6a1c7d68f28605c7"
        )

        authorization = build_authorization(
            "GET",
            "https://example.amazonaws.com/",
            headers,
            EMPTY_PAYLOAD_HASH,
            AWS_EXAMPLE,
            VANILLA_DATE,
            region="us-east-1",
            service="service",
        )
        assert authorization == (
            "AWS4-HMAC-SHA256 "
            "Credential=AKIDEXAMPLE/20150830/us-east-1/service/aws4_request, "
            "SignedHeaders=host;my-header1;my-header2;x-amz-date, "
            "Signature=acc3ed3afb60bb290fc8d2dd0098b9911fcaa05412b367055dee359757a9c736"
        )

    def test_signing_key_derivation(self):
        key = derive_signing_key(
            "wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY", "20120215", "us-east-1", "iam"
        )
        assert key.hex() == "f4780e2d9f65fa895f9c67b32ce1baf0b0d8a43505a000a1a9e090d414db404d"


# ---------------------------------------------------------------------------
# sign_request
# ---------------------------------------------------------------------------

class TestSignRequest:
    """Tests for signing a complete request."""

    def _sign(self, body=b"data", **kwargs):
        return sign_request(
            "PUT",
            "https://acct.r2.cloudflarestorage.com/bucket/documents/1-a.pdf",
            {"Host": "acct.r2.cloudflarestorage.com", "Content-Type": "application/pdf"},
            body,
            AWS_EXAMPLE,
            now=FIXED_NOW,
            **kwargs,
        )

    def test_adds_amz_headers_and_authorization(self):
        headers = self._sign()
        assert headers["x-amz-date"] == "20240501T093000Z"
        assert headers["x-amz-content-sha256"] == hashlib.sha256(b"data").hexdigest()
        assert headers["Authorization"].startswith(
            "AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/20240501/auto/s3/aws4_request, "
        )

    def test_amz_headers_are_signed(self):
        headers = self._sign()
        assert "SignedHeaders=content-type;host;x-amz-content-sha256;x-amz-date," in headers["Authorization"]

    def test_keeps_input_headers(self):
        headers = self._sign()
        assert headers["Content-Type"] == "application/pdf"
        assert headers["Host"] == "acct.r2.cloudflarestorage.com"

    def test_deterministic_for_fixed_time(self):
        assert self._sign() == self._sign()

    def test_body_changes_signature(self):
        assert self._sign(b"one")["Authorization"] != self._sign(b"two")["Authorization"]

    def test_region_and_service_in_scope(self):
        headers = self._sign(region="eu-west-1", service="s3")
        assert "/20240501/eu-west-1/s3/aws4_request" in headers["Authorization"]

    def test_secret_never_appears_in_headers(self):
        headers = self._sign()
        assert all(AWS_EXAMPLE.secret_access_key not in value for value in headers.values())

    def test_missing_secret_is_rejected(self):
        incomplete = Credentials(endpoint="https://x", access_key_id="AK", secret_access_key="")
        with pytest.raises(ValueError, match="secret_access_key"):
            sign_request("GET", "https://x/b/k", {"Host": "x"}, b"", incomplete)


# ---------------------------------------------------------------------------
# presign_url
# ---------------------------------------------------------------------------

class TestPresignUrl:
    """Tests for query-string signed URLs."""

    def _presign(self, **kwargs):
        return presign_url(
            "PUT",
            "https://acct.r2.cloudflarestorage.com/bucket/picks/1-photo.jpg",
            AWS_EXAMPLE,
            now=FIXED_NOW,
            **kwargs,
        )

    def test_contains_all_amz_parameters(self):
        query = parse_qs(urlsplit(self._presign()).query)
        assert query["X-Amz-Algorithm"] == ["AWS4-HMAC-SHA256"]
        assert query["X-Amz-Credential"] == ["AKIDEXAMPLE/20240501/auto/s3/aws4_request"]
        assert query["X-Amz-Date"] == ["20240501T093000Z"]
        assert query["X-Amz-Expires"] == ["3600"]
        assert query["X-Amz-SignedHeaders"] == ["host"]
        assert len(query["X-Amz-Signature"][0]) == 64

    def test_signature_is_last_parameter(self):
        assert "&X-Amz-Signature=" in self._presign()
        assert self._presign().rsplit("&", 1)[1].startswith("X-Amz-Signature=")

    def test_extra_headers_are_signed(self):
        url = self._presign(headers={"Content-Type": "image/jpeg", "Cache-Control": "no-cache"})
        query = parse_qs(urlsplit(url).query)
        assert query["X-Amz-SignedHeaders"] == ["cache-control;content-type;host"]

    def test_expiry(self):
        query = parse_qs(urlsplit(self._presign(expires_in=600)).query)
        assert query["X-Amz-Expires"] == ["600"]

    def test_path_is_kept(self):
        assert urlsplit(self._presign()).path == "/bucket/picks/1-photo.jpg"

    def test_secret_not_in_url(self):
        assert AWS_EXAMPLE.secret_access_key not in self._presign()
        assert "wJalrXUtnFEMI" not in self._presign()

    def test_deterministic_for_fixed_time(self):
        """No body is involved, so the URL depends only on inputs and time."""
        url_a = presign_url("PUT", "https://h/b/k", AWS_EXAMPLE, now=FIXED_NOW)
        url_b = presign_url("PUT", "https://h/b/k", AWS_EXAMPLE, now=FIXED_NOW)
        assert url_a == url_b
