"""
AWS Signature Version 4 request signing.

The object storage client signs its own requests instead of going through
a vendor SDK. The algorithm has to match the server's verification byte
for byte, so every step is a small pure function:

1. canonical_request: normalized method, path, query, headers, payload hash
2. string_to_sign: algorithm, timestamp, credential scope, request hash
3. derive_signing_key: HMAC chain over date, region, service
4. build_authorization: the final Authorization header

sign_request ties them together for a single HTTP request. presign_url
produces a query-string-signed URL that a browser can PUT to directly.

Nothing in here does I/O. A missing credential field is a programming
error and raises ValueError.
"""

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Mapping, Optional
from urllib.parse import parse_qsl, quote, urlsplit

from ...core.jobs.models import Credentials

ALGORITHM = "AWS4-HMAC-SHA256"
TERMINATOR = "aws4_request"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
EMPTY_PAYLOAD_HASH = hashlib.sha256(b"").hexdigest()


def format_timestamps(now: Optional[datetime] = None) -> tuple[str, str]:
    """Return (amz_date, date_stamp), e.g. ('20150830T123600Z', '20150830')."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    amz_date = now.strftime("%Y%m%dT%H%M%SZ")
    return amz_date, amz_date[:8]


def hash_payload(body: bytes) -> str:
    """Hex SHA-256 of the body. An empty body hashes zero bytes."""
    return hashlib.sha256(body or b"").hexdigest()


def _hmac(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def _uri_encode(value: str) -> str:
    return quote(value, safe="-_.~")


def _normalize_header_value(value: str) -> str:
    # Servers trim and collapse whitespace before verifying
    return " ".join(str(value).split())


def canonicalize_headers(headers: Mapping[str, str]) -> tuple[str, str]:
    """
    Build the canonical header block and the signed header list.

    Names are lower-cased and sorted; values are trimmed. Returns
    (canonical_headers, signed_headers) where canonical_headers ends
    with a newline after the last header.
    """
    normalized = {
        name.strip().lower(): _normalize_header_value(value)
        for name, value in headers.items()
    }
    names = sorted(normalized)
    canonical = "".join(f"{name}:{normalized[name]}\n" for name in names)
    return canonical, ";".join(names)


def canonical_query(query: str) -> str:
    """Sort query parameters by name and value and encode them per RFC 3986."""
    if not query:
        return ""
    pairs = parse_qsl(query, keep_blank_values=True)
    return "&".join(
        f"{_uri_encode(name)}={_uri_encode(value)}"
        for name, value in sorted(pairs)
    )


def canonical_request(
    method: str,
    url: str,
    headers: Mapping[str, str],
    payload_hash: str,
) -> tuple[str, str]:
    """
    Build the canonical request string.

    Returns (canonical_request, signed_headers).
    """
    parts = urlsplit(url)
    canonical_headers, signed_headers = canonicalize_headers(headers)
    request = "\n".join([
        method.upper(),
        parts.path or "/",
        canonical_query(parts.query),
        canonical_headers,
        signed_headers,
        payload_hash,
    ])
    return request, signed_headers


def credential_scope(date_stamp: str, region: str, service: str) -> str:
    return f"{date_stamp}/{region}/{service}/{TERMINATOR}"


def string_to_sign(amz_date: str, scope: str, canonical: str) -> str:
    request_hash = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return "\n".join([ALGORITHM, amz_date, scope, request_hash])


def derive_signing_key(
    secret_access_key: str,
    date_stamp: str,
    region: str,
    service: str,
) -> bytes:
    """HMAC(HMAC(HMAC(HMAC('AWS4' + secret, date), region), service), 'aws4_request')."""
    k_date = _hmac(f"AWS4{secret_access_key}".encode("utf-8"), date_stamp)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, TERMINATOR)


def _require(credentials: Credentials) -> None:
    missing = [
        name for name in ("access_key_id", "secret_access_key")
        if not getattr(credentials, name)
    ]
    if missing:
        raise ValueError(f"Cannot sign request without {', '.join(missing)}")


def build_authorization(
    method: str,
    url: str,
    headers: Mapping[str, str],
    payload_hash: str,
    credentials: Credentials,
    amz_date: str,
    region: str,
    service: str,
) -> str:
    """
    Compute the Authorization header value for an already-assembled header set.

    headers must contain every header that should be signed (including
    x-amz-date when the caller wants it signed).
    """
    _require(credentials)
    date_stamp = amz_date[:8]
    scope = credential_scope(date_stamp, region, service)
    request, signed_headers = canonical_request(method, url, headers, payload_hash)
    key = derive_signing_key(credentials.secret_access_key, date_stamp, region, service)
    signature = hmac.new(
        key, string_to_sign(amz_date, scope, request).encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return (
        f"{ALGORITHM} Credential={credentials.access_key_id}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )


def sign_request(
    method: str,
    url: str,
    headers: Mapping[str, str],
    body: bytes,
    credentials: Credentials,
    region: str = "auto",
    service: str = "s3",
    now: Optional[datetime] = None,
) -> dict[str, str]:
    """
    Sign one HTTP request.

    Returns the input headers plus x-amz-date, x-amz-content-sha256 and
    Authorization. Both x-amz-* headers are part of the signed set, as S3
    requires.
    """
    amz_date, _ = format_timestamps(now)
    payload_hash = hash_payload(body)

    signed = {
        name: value
        for name, value in headers.items()
        if name.lower() not in ("x-amz-date", "x-amz-content-sha256", "authorization")
    }
    signed["x-amz-date"] = amz_date
    signed["x-amz-content-sha256"] = payload_hash

    signed["Authorization"] = build_authorization(
        method,
        url,
        {k: v for k, v in signed.items() if k != "Authorization"},
        payload_hash,
        credentials,
        amz_date,
        region,
        service,
    )
    return signed


def presign_url(
    method: str,
    url: str,
    credentials: Credentials,
    expires_in: int = 3600,
    headers: Optional[Mapping[str, str]] = None,
    region: str = "auto",
    service: str = "s3",
    now: Optional[datetime] = None,
) -> str:
    """
    Produce a query-string-signed URL.

    The payload is not hashed (UNSIGNED-PAYLOAD) because the uploader
    sends the body later. Any extra headers passed in are signed and must
    be sent verbatim by whoever uses the URL; host is always signed.
    """
    _require(credentials)
    amz_date, date_stamp = format_timestamps(now)
    scope = credential_scope(date_stamp, region, service)
    parts = urlsplit(url)

    to_sign = {"host": parts.netloc}
    for name, value in (headers or {}).items():
        to_sign[name.lower()] = value
    _, signed_headers = canonicalize_headers(to_sign)

    params = dict(parse_qsl(parts.query, keep_blank_values=True))
    params.update({
        "X-Amz-Algorithm": ALGORITHM,
        "X-Amz-Credential": f"{credentials.access_key_id}/{scope}",
        "X-Amz-Date": amz_date,
        "X-Amz-Expires": str(expires_in),
        "X-Amz-SignedHeaders": signed_headers,
    })
    query = "&".join(
        f"{_uri_encode(k)}={_uri_encode(v)}" for k, v in sorted(params.items())
    )
    unsigned_url = f"{parts.scheme}://{parts.netloc}{parts.path or '/'}?{query}"

    request, _ = canonical_request(method, unsigned_url, to_sign, UNSIGNED_PAYLOAD)
    key = derive_signing_key(credentials.secret_access_key, date_stamp, region, service)
    signature = hmac.new(
        key, string_to_sign(amz_date, scope, request).encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"{unsigned_url}&X-Amz-Signature={signature}"
