"""
AWS Signature Version 4 request signing.

Signs ``httpx.Request`` values for Bedrock. Only ``host``, ``content-type``
and ``x-amz-*`` headers are signed; the payload hash is always sent as
``X-Amz-Content-Sha256``.

Reference: https://docs.aws.amazon.com/general/latest/gr/sigv4_signing.html
"""

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote, unquote

import httpx

from .profiles import AWSCredentials

ALGORITHM = "AWS4-HMAC-SHA256"
EMPTY_PAYLOAD_HASH = hashlib.sha256(b"").hexdigest()


class SigningError(Exception):
    """Base exception for request signing failures. Always fatal to the call."""


class InvalidURLError(SigningError):
    def __init__(self):
        super().__init__("Invalid URL for signing")


class MissingHostError(SigningError):
    def __init__(self):
        super().__init__("URL is missing host")


class SigningFailedError(SigningError):
    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Signing failed: {detail}")


def amz_date(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def date_stamp(now: datetime) -> str:
    return now.astimezone(timezone.utc).strftime("%Y%m%d")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def is_signable_header(name: str) -> bool:
    name = name.lower()
    return name in ("host", "content-type") or name.startswith("x-amz-")


def signed_header_names(headers: Mapping[str, str]) -> List[str]:
    return sorted({name.lower() for name in headers if is_signable_header(name)})


def canonical_header_value(value: str) -> str:
    return " ".join(value.split())


def canonical_headers(headers: Mapping[str, str], names: List[str]) -> str:
    lowered = {name.lower(): value for name, value in headers.items()}
    return "".join(
        f"{name}:{canonical_header_value(lowered.get(name, ''))}\n" for name in names
    )


def canonical_uri(raw_path: str) -> str:
    """URI-encode the (already encoded) path once more, as AWS does for non-S3 services."""
    return quote(raw_path or "/", safe="/~")


def canonical_query_string(raw_query: str) -> str:
    if not raw_query:
        return ""
    pairs: List[Tuple[str, str]] = []
    for part in raw_query.split("&"):
        if not part:
            continue
        key, _, value = part.partition("=")
        pairs.append((
            quote(unquote(key), safe="-_.~"),
            quote(unquote(value), safe="-_.~"),
        ))
    return "&".join(f"{key}={value}" for key, value in sorted(pairs))


def build_canonical_request(
    method: str,
    raw_path: str,
    raw_query: str,
    headers: Mapping[str, str],
    payload_hash: str,
) -> Tuple[str, str]:
    """Return ``(canonical_request, signed_headers)`` for the given request parts."""
    names = signed_header_names(headers)
    signed_headers = ";".join(names)
    canonical_request = "\n".join([
        method.upper(),
        canonical_uri(raw_path),
        canonical_query_string(raw_query),
        canonical_headers(headers, names),
        signed_headers,
        payload_hash,
    ])
    return canonical_request, signed_headers


def credential_scope(stamp: str, region: str, service: str) -> str:
    return f"{stamp}/{region}/{service}/aws4_request"


def build_string_to_sign(request_date: str, scope: str, canonical_request: str) -> str:
    return "\n".join([
        ALGORITHM,
        request_date,
        scope,
        sha256_hex(canonical_request.encode("utf-8")),
    ])


def derive_signing_key(secret_key: str, stamp: str, region: str, service: str) -> bytes:
    k_date = hmac_sha256(f"AWS4{secret_key}".encode("utf-8"), stamp)
    k_region = hmac_sha256(k_date, region)
    k_service = hmac_sha256(k_region, service)
    return hmac_sha256(k_service, "aws4_request")


def compute_signature(signing_key: bytes, string_to_sign: str) -> str:
    return hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()


def sign(
    request: httpx.Request,
    credentials: AWSCredentials,
    region: str,
    service: str,
    now: Optional[datetime] = None,
) -> httpx.Request:
    """
    Sign an HTTP request with AWS Signature Version 4.

    Args:
        request: Request to sign; left untouched
        credentials: Access key, secret and optional session token
        region: AWS region, e.g. ``us-west-2``
        service: Signing service name, e.g. ``bedrock-runtime``
        now: Signing time (defaults to the current UTC time)

    Returns:
        A new request carrying ``X-Amz-*`` and ``Authorization`` headers.

    Raises:
        InvalidURLError: The request URL is not absolute
        MissingHostError: The request URL has no host
        SigningFailedError: The body could not be read or hashed
    """
    url = request.url
    if url is None or not url.scheme:
        raise InvalidURLError()
    if not url.host:
        raise MissingHostError()

    now = now or datetime.now(timezone.utc)
    request_date = amz_date(now)
    stamp = date_stamp(now)

    try:
        body = request.read()
    except (httpx.RequestNotRead, httpx.StreamError, TypeError) as e:
        raise SigningFailedError(str(e)) from e
    payload_hash = sha256_hex(body or b"")

    headers: Dict[str, str] = {
        name: value for name, value in request.headers.items()
        if name.lower() not in ("host", "x-amz-date", "x-amz-security-token",
                                "x-amz-content-sha256", "authorization")
    }
    headers["Host"] = url.host
    headers["X-Amz-Date"] = request_date
    if credentials.session_token:
        headers["X-Amz-Security-Token"] = credentials.session_token
    headers["X-Amz-Content-Sha256"] = payload_hash

    raw_path, _, raw_query = url.raw_path.decode("ascii").partition("?")
    canonical_request, signed_headers = build_canonical_request(
        request.method, raw_path, raw_query, headers, payload_hash
    )

    scope = credential_scope(stamp, region, service)
    string_to_sign = build_string_to_sign(request_date, scope, canonical_request)
    signing_key = derive_signing_key(credentials.secret_access_key, stamp, region, service)
    signature = compute_signature(signing_key, string_to_sign)

    headers["Authorization"] = (
        f"{ALGORITHM} Credential={credentials.access_key_id}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )

    return httpx.Request(
        request.method,
        url,
        headers=headers,
        content=body,
        extensions=request.extensions,
    )
