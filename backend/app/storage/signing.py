"""
AWS Signature Version 4 — Request Signing & Presigned URLs
══════════════════════════════════════════════════════════

Two outputs from the same canonicalization core:

  sign_request()  → SignedRequest  (Authorization header; Textract JSON API)
  presign_url()   → PresignedUrl   (X-Amz-Signature query param; S3 GET/PUT)

Signing flow:
  1. Canonical request
        METHOD \n PATH \n SORTED_QUERY \n HEADERS \n SIGNED_HEADERS \n PAYLOAD_HASH
  2. String to sign
        AWS4-HMAC-SHA256 \n AMZ_DATE \n SCOPE \n sha256(canonical_request)
  3. Signing key — HMAC-SHA256 chain
        "AWS4" + secret → date → region → service → "aws4_request"
  4. Signature = hex(HMAC(signing_key, string_to_sign))

Every function here is pure: credentials, region and the clock are explicit
arguments. Tests pin the clock to reproduce AWS's published examples.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Mapping
from urllib.parse import quote

from app.core.errors import ConfigurationError

ALGORITHM        = "AWS4-HMAC-SHA256"
UNSIGNED_PAYLOAD = "UNSIGNED-PAYLOAD"
SCOPE_TERMINATOR = "aws4_request"

# SigV4 presigned URLs cannot outlive 7 days
MAX_PRESIGN_EXPIRY_SECONDS = 7 * 24 * 3600

Clock = Callable[[], datetime]


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AwsCredentials:
    access_key_id:     str
    secret_access_key: str
    session_token:     str | None = None

    def require(self) -> None:
        """Fail fast before any hashing if the long-lived keys are absent."""
        missing = []
        if not self.access_key_id:
            missing.append("AWS_ACCESS_KEY_ID")
        if not self.secret_access_key:
            missing.append("AWS_SECRET_ACCESS_KEY")
        if missing:
            raise ConfigurationError("AWS credentials are not configured", missing=missing)


@dataclass(frozen=True)
class SignedRequest:
    method:  str
    url:     str
    headers: dict[str, str]   # includes Authorization
    body:    bytes


@dataclass(frozen=True)
class PresignedUrl:
    url:        str
    expires_in: int   # seconds
    method:     str   # GET | PUT


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def encode_rfc3986(value: str) -> str:
    """Percent-encode everything except the RFC 3986 unreserved set."""
    return quote(value, safe="-_.~")


def encode_object_key(key: str) -> str:
    """Encode an S3 key segment by segment so '/' separators survive."""
    return "/".join(encode_rfc3986(segment) for segment in key.split("/"))


def s3_virtual_host(bucket: str, region: str) -> str:
    if region == "us-east-1":
        return f"{bucket}.s3.amazonaws.com"
    return f"{bucket}.s3.{region}.amazonaws.com"


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def _timestamps(clock: Clock) -> tuple[str, str]:
    """Return (amz_date, date_stamp), e.g. ('20130524T000000Z', '20130524')."""
    now = clock()
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    amz_date = now.strftime("%Y%m%dT%H%M%SZ")
    return amz_date, amz_date[:8]


def _normalize_header_value(value: str) -> str:
    return " ".join(value.split())


def canonical_query_string(query: Mapping[str, str | None] | None) -> str:
    """Encode and sort query parameters; None/empty values are dropped."""
    pairs = sorted(
        (encode_rfc3986(key), encode_rfc3986(value))
        for key, value in (query or {}).items()
        if value
    )
    return "&".join(f"{key}={value}" for key, value in pairs)


def derive_signing_key(secret: str, date_stamp: str, region: str, service: str) -> bytes:
    k_date    = _hmac_sha256(f"AWS4{secret}".encode("utf-8"), date_stamp)
    k_region  = _hmac_sha256(k_date, region)
    k_service = _hmac_sha256(k_region, service)
    return _hmac_sha256(k_service, SCOPE_TERMINATOR)


def _signature(
    credentials:       AwsCredentials,
    canonical_request: str,
    amz_date:          str,
    date_stamp:        str,
    region:            str,
    service:           str,
) -> tuple[str, str]:
    """Return (credential_scope, hex_signature) for a canonical request."""
    scope = f"{date_stamp}/{region}/{service}/{SCOPE_TERMINATOR}"
    string_to_sign = "\n".join([
        ALGORITHM,
        amz_date,
        scope,
        _sha256_hex(canonical_request.encode("utf-8")),
    ])
    key = derive_signing_key(credentials.secret_access_key, date_stamp, region, service)
    signature = hmac.new(key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()
    return scope, signature


# ---------------------------------------------------------------------------
# Header-signed requests
# ---------------------------------------------------------------------------

def sign_request(
    method:      str,
    path:        str,
    *,
    region:      str,
    service:     str,
    credentials: AwsCredentials,
    query:       Mapping[str, str | None] | None = None,
    headers:     Mapping[str, str | None] | None = None,
    body:        bytes | str = b"",
    host:        str | None = None,
    clock:       Clock = utc_now,
) -> SignedRequest:
    """
    Build a fully authenticated request.

    `path` must already be URI-encoded (use encode_object_key for S3 keys).
    `host` defaults to the regional endpoint <service>.<region>.amazonaws.com.
    """
    credentials.require()

    host = host or f"{service}.{region}.amazonaws.com"
    payload = body.encode("utf-8") if isinstance(body, str) else body
    payload_hash = _sha256_hex(payload)
    amz_date, date_stamp = _timestamps(clock)

    header_map: dict[str, str] = {
        "host":                 host,
        "x-amz-date":           amz_date,
        "x-amz-content-sha256": payload_hash,
    }
    if credentials.session_token:
        header_map["x-amz-security-token"] = credentials.session_token
    for name, value in (headers or {}).items():
        if value:
            header_map[name.lower()] = _normalize_header_value(value)

    sorted_headers = sorted(header_map.items())
    canonical_headers = "".join(f"{name}:{value}\n" for name, value in sorted_headers)
    signed_headers = ";".join(name for name, _ in sorted_headers)
    canonical_query = canonical_query_string(query)

    canonical_request = "\n".join([
        method.upper(),
        path,
        canonical_query,
        canonical_headers,
        signed_headers,
        payload_hash,
    ])
    scope, signature = _signature(
        credentials, canonical_request, amz_date, date_stamp, region, service,
    )

    request_headers = dict(sorted_headers)
    request_headers["authorization"] = (
        f"{ALGORITHM} Credential={credentials.access_key_id}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )
    url = f"https://{host}{path}" + (f"?{canonical_query}" if canonical_query else "")

    return SignedRequest(
        method=method.upper(),
        url=url,
        headers=request_headers,
        body=payload,
    )


# ---------------------------------------------------------------------------
# Presigned S3 URLs
# ---------------------------------------------------------------------------

def presign_url(
    method:       str,
    bucket:       str,
    key:          str,
    *,
    region:       str,
    credentials:  AwsCredentials,
    expires_in:   int = 900,
    content_type: str | None = None,
    host:         str | None = None,
    clock:        Clock = utc_now,
) -> PresignedUrl:
    """
    Generate a presigned S3 URL scoped to exactly one object key.

    When `content_type` is given it becomes a signed header — the uploader
    must send the identical Content-Type or S3 rejects the PUT.
    """
    credentials.require()
    if not 1 <= expires_in <= MAX_PRESIGN_EXPIRY_SECONDS:
        raise ValueError(f"expires_in must be between 1 and {MAX_PRESIGN_EXPIRY_SECONDS}")

    host = host or s3_virtual_host(bucket, region)
    encoded_key = encode_object_key(key)
    amz_date, date_stamp = _timestamps(clock)
    scope = f"{date_stamp}/{region}/s3/{SCOPE_TERMINATOR}"
    signed_headers = "content-type;host" if content_type else "host"

    query: dict[str, str | None] = {
        "X-Amz-Algorithm":     ALGORITHM,
        "X-Amz-Credential":    f"{credentials.access_key_id}/{scope}",
        "X-Amz-Date":          amz_date,
        "X-Amz-Expires":       str(expires_in),
        "X-Amz-SignedHeaders": signed_headers,
        "X-Amz-Security-Token": credentials.session_token,
    }
    canonical_query = canonical_query_string(query)

    canonical_headers = (
        f"content-type:{_normalize_header_value(content_type)}\nhost:{host}\n"
        if content_type else f"host:{host}\n"
    )
    canonical_request = "\n".join([
        method.upper(),
        f"/{encoded_key}",
        canonical_query,
        canonical_headers,
        signed_headers,
        UNSIGNED_PAYLOAD,
    ])
    _, signature = _signature(
        credentials, canonical_request, amz_date, date_stamp, region, "s3",
    )

    return PresignedUrl(
        url=f"https://{host}/{encoded_key}?{canonical_query}&X-Amz-Signature={signature}",
        expires_in=expires_in,
        method=method.upper(),
    )
