#Filename: proxy_common.py
"""
PROXY COMMON DEFINITIONS
Shared errors, header policy and CORS policy for the relay.
Everything here is a pure function over its inputs.
"""

import enum
import re
from typing import FrozenSet, Iterable, Optional

import httpx

from structures import (
    CorsDecision, HeaderList, REQUEST_STRIP_HEADERS, RESPONSE_STRIP_HEADERS,
    REQUEST_FRAMING_HEADERS, WILDCARD_ORIGIN, CORS_ALLOW_METHODS, CORS_ALLOW_HEADERS,
    CORS_ALLOW_CREDENTIALS, CORS_MAX_AGE
)

# -- Constants --
STRICT_HEADER_PATTERN = re.compile(rb'^([!#$%&\'*+\-.^_`|~0-9a-zA-Z]+):[ \t]*(.*)$')
TOKEN_PATTERN = re.compile(r'^[!#$%&\'*+\-.^_`|~0-9a-zA-Z]+$')
IDLE_TIMEOUT = 60.0
MAX_HEADER_LIST_SIZE = 262144
READ_CHUNK_SIZE = 65536
COMPACTION_THRESHOLD = 65536
CHUNK_SIZE_PATTERN = re.compile(rb'^[0-9A-Fa-f]{1,16}$')


class ProxyError(Exception):
    """Base exception for Proxy operations."""

class PayloadTooLargeError(ProxyError):
    """Raised when an inbound body exceeds the configured limit."""

class UnsupportedTransferCodingError(ProxyError):
    """Raised for inbound transfer codings other than plain chunked."""

class ConnectionErrorKind(enum.Enum):
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"

class UpstreamConnectionError(ProxyError):
    """
    The backend could not deliver a complete response.
    `kind` tells timeouts apart from DNS/refused/reset failures.
    """

    def __init__(self, kind: ConnectionErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __repr__(self) -> str:
        return f"<UpstreamConnectionError {self.kind.name}: {self.message}>"

# -- Header Filter --

def header_items(headers: httpx.Headers) -> HeaderList:
    """
    Header pairs with their original casing and duplicates preserved.
    Decoded as latin-1 so the bytes survive a round trip unchanged.
    """
    return [(k.decode('latin-1'), v.decode('latin-1')) for k, v in headers.raw]

def _strip(headers: httpx.Headers, excluded: FrozenSet[str]) -> httpx.Headers:
    # Work on raw bytes; httpx only encodes str values as ascii.
    return httpx.Headers(
        [(k, v) for k, v in headers.raw if k.decode('latin-1').lower() not in excluded]
    )

def strip_request_headers(headers: httpx.Headers) -> httpx.Headers:
    """Removes host, content-length and connection. Returns a new collection."""
    return _strip(headers, REQUEST_STRIP_HEADERS)

def strip_response_headers(headers: httpx.Headers) -> httpx.Headers:
    """Removes content-encoding, transfer-encoding and connection. Returns a new collection."""
    return _strip(headers, RESPONSE_STRIP_HEADERS)

def build_forwarded_headers(headers: httpx.Headers, client_addr: Optional[str]) -> httpx.Headers:
    """
    Request headers as the backend should see them. The inbound body has
    already been de-chunked, so transfer-encoding goes too; httpx frames the
    forwarded body with its own Content-Length.
    """
    forwarded = _strip(strip_request_headers(headers), REQUEST_FRAMING_HEADERS)
    if client_addr:
        forwarded["X-Forwarded-For"] = client_addr
        forwarded["X-Real-IP"] = client_addr
    return forwarded

def validate_header_value(value: str) -> bool:
    """Field values MUST NOT contain CR, LF, or NUL."""
    return '\r' not in value and '\n' not in value and '\x00' not in value

def is_valid_header(name: str, value: str) -> bool:
    """True when a header line can be re-emitted without breaking framing."""
    return bool(TOKEN_PATTERN.match(name)) and validate_header_value(value)

# -- CORS Policy --

def decide_cors(origin: Optional[str], allowed_origins: Iterable[str]) -> CorsDecision:
    """
    Computes the Access-Control-* headers for a response.

    Allow-Origin echoes the request origin (or '*' when none was sent) if the
    allow-list holds the wildcard or the origin itself; otherwise it is left
    out and the browser rejects the response on its own.
    """
    allowed = set(allowed_origins)
    origin = origin or None
    headers: HeaderList = []

    if WILDCARD_ORIGIN in allowed or (origin is not None and origin in allowed):
        headers.append(("Access-Control-Allow-Origin", origin or WILDCARD_ORIGIN))

    headers.extend([
        ("Access-Control-Allow-Methods", CORS_ALLOW_METHODS),
        ("Access-Control-Allow-Headers", CORS_ALLOW_HEADERS),
        ("Access-Control-Allow-Credentials", CORS_ALLOW_CREDENTIALS),
        ("Access-Control-Max-Age", CORS_MAX_AGE),
    ])
    return CorsDecision(headers)
