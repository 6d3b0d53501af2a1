"""
Shared-key request signing for the blob service REST API.

The string-to-sign is a fixed sequence of fields joined by newlines:

    VERB
    Content-Encoding
    Content-Language
    Content-Length      (blank when zero)
    Content-MD5
    Content-Type
    Date
    If-Modified-Since
    If-Match
    If-None-Match
    If-Unmodified-Since
    Range
    CanonicalizedHeaders
    CanonicalizedResource

Blank fields keep their line. Moving a single newline still yields a valid
signature over the wrong content, which the service rejects with 403, so the
layout is built from SIGNED_FIELDS rather than from string interpolation.

Invariants:
    - CanonicalizedHeaders holds only x-ms-* headers, lower-cased and sorted
    - Query parameters in CanonicalizedResource are lower-cased and sorted
    - The account key is never logged
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass, field
from datetime import datetime, timezone

API_VERSION = "2021-06-08"

SIGNED_FIELDS = (
    "content-encoding",
    "content-language",
    "content-length",
    "content-md5",
    "content-type",
    "date",
    "if-modified-since",
    "if-match",
    "if-none-match",
    "if-unmodified-since",
    "range",
)


def format_http_date(now: datetime | None = None) -> str:
    """Format a timestamp as an RFC 1123 date in GMT."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S GMT")


@dataclass
class SignableRequest:
    """The parts of an HTTP request covered by the shared-key signature.

    Attributes:
        method: HTTP verb
        resource_path: URL path including the container (e.g. /container/blob)
        query: Query parameters
        headers: Request headers (standard and x-ms-*)
    """

    method: str
    resource_path: str
    query: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str:
        for key, value in self.headers.items():
            if key.lower() == name:
                return value
        return ""


def canonicalized_headers(headers: dict[str, str]) -> str:
    pairs = sorted(
        (name.lower().strip(), value.strip())
        for name, value in headers.items()
        if name.lower().startswith("x-ms-")
    )
    return "\n".join(f"{name}:{value}" for name, value in pairs)


def canonicalized_resource(account_name: str, resource_path: str, query: dict[str, str]) -> str:
    lines = [f"/{account_name}{resource_path}"]
    for name, value in sorted((k.lower(), v) for k, v in query.items()):
        lines.append(f"{name}:{value}")
    return "\n".join(lines)


def string_to_sign(account_name: str, request: SignableRequest) -> str:
    """Build the string-to-sign for a request."""
    fields = [request.method.upper()]
    for name in SIGNED_FIELDS:
        value = request.header(name)
        if name == "content-length" and value == "0":
            value = ""
        fields.append(value)
    fields.append(canonicalized_headers(request.headers))
    fields.append(canonicalized_resource(account_name, request.resource_path, request.query))
    return "\n".join(fields)


def compute_signature(account_key: str, payload: str) -> str:
    """base64(HMAC-SHA256(base64decode(account_key), utf8(payload)))."""
    key = base64.b64decode(account_key)
    digest = hmac.new(key, payload.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class SharedKeySigner:
    """Adds x-ms-date, x-ms-version and Authorization headers to requests.

    Example:
        >>> signer = SharedKeySigner("myaccount", key)
        >>> headers = signer.sign(SignableRequest("GET", "/container/blob"))
    """

    def __init__(self, account_name: str, account_key: str, api_version: str = API_VERSION) -> None:
        self.account_name = account_name
        self.api_version = api_version
        # Fail on a malformed key at construction rather than on first request
        base64.b64decode(account_key, validate=True)
        self._account_key = account_key

    def sign(self, request: SignableRequest, now: datetime | None = None) -> dict[str, str]:
        """Return the request headers with authentication headers added.

        The returned dict is also what was signed, so it must be sent as-is.
        """
        headers = dict(request.headers)
        headers["x-ms-date"] = format_http_date(now)
        headers["x-ms-version"] = self.api_version
        signed = SignableRequest(
            method=request.method,
            resource_path=request.resource_path,
            query=request.query,
            headers=headers,
        )
        signature = compute_signature(self._account_key, string_to_sign(self.account_name, signed))
        headers["Authorization"] = f"SharedKey {self.account_name}:{signature}"
        return headers
