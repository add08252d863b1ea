#Filename: structures.py
"""
CORE DATA STRUCTURES
Constants and value types shared by the header policy, upstream client,
request handler and the HTTP/1.1 server.
"""

import enum
from typing import FrozenSet, List, Optional, Tuple

import httpx

# -- Constants --

MAX_REQUEST_BODY_SIZE: int = 10 * 1024 * 1024   # 10MB limit for inbound bodies
DEFAULT_CONNECT_TIMEOUT: float = 10.0
DEFAULT_TOTAL_TIMEOUT: float = 60.0
DEFAULT_MAX_REDIRECTS: int = 20
WILDCARD_ORIGIN: str = "*"

# Methods whose inbound body is relayed upstream.
BODY_METHODS: FrozenSet[str] = frozenset({"POST", "PUT", "PATCH"})

# Connection/encoding specific to one hop; never copied across the proxy.
REQUEST_STRIP_HEADERS: FrozenSet[str] = frozenset({"host", "content-length", "connection"})
RESPONSE_STRIP_HEADERS: FrozenSet[str] = frozenset(
    {"content-encoding", "transfer-encoding", "connection"}
)
# Inbound message framing; the body is re-framed for the backend.
REQUEST_FRAMING_HEADERS: FrozenSet[str] = frozenset({"transfer-encoding"})

CORS_ALLOW_METHODS: str = "GET, POST, PUT, DELETE, OPTIONS"
CORS_ALLOW_HEADERS: str = "Content-Type, Authorization, X-Requested-With"
CORS_ALLOW_CREDENTIALS: str = "true"
CORS_MAX_AGE: str = "86400"

BACKEND_FAILURE_MESSAGE: str = "Backend connection failed"

# -- Types --

HeaderList = List[Tuple[str, str]]


class RequestState(enum.Enum):
    """States a single request passes through inside the ProxyHandler."""
    RECEIVED = "received"
    OPTIONS_SHORT_CIRCUIT = "options_short_circuit"
    FORWARDING = "forwarding"
    FAILED = "failed"
    RESPONDING = "responding"
    DONE = "done"


class InboundRequest:
    """
    A parsed client request.
    Headers are case-insensitive; body is None for methods that carry none.
    """
    __slots__ = ('method', 'target', 'headers', 'body', 'client_addr')

    def __init__(
        self,
        method: str,
        target: str,
        headers: httpx.Headers,
        body: Optional[bytes] = None,
        client_addr: Optional[str] = None
    ) -> None:
        if body is not None and not isinstance(body, bytes):
            raise TypeError(f"Request body must be bytes, got {type(body).__name__}")
        self.method: str = method.upper()
        self.target: str = target
        self.headers: httpx.Headers = httpx.Headers(headers)
        self.body: Optional[bytes] = body if self.method in BODY_METHODS else None
        self.client_addr: Optional[str] = client_addr or None

    @property
    def origin(self) -> Optional[str]:
        """The declared Origin; an empty header counts as absent."""
        return self.headers.get("origin") or None

    @property
    def user_agent(self) -> Optional[str]:
        return self.headers.get("user-agent") or None

    def __repr__(self) -> str:
        return f"<InboundRequest {self.method} {self.target} from {self.client_addr}>"


class ForwardedRequest:
    """The request as sent to the backend."""
    __slots__ = ('method', 'url', 'headers', 'body')

    def __init__(
        self,
        method: str,
        url: str,
        headers: httpx.Headers,
        body: Optional[bytes] = None
    ) -> None:
        self.method = method
        self.url = url
        self.headers = headers
        self.body = body

    def __repr__(self) -> str:
        return f"<ForwardedRequest {self.method} {self.url}>"


class UpstreamResponse:
    """Status, headers and body as received from the backend."""
    __slots__ = ('status_code', 'headers', 'body')

    def __init__(self, status_code: int, headers: httpx.Headers, body: bytes) -> None:
        if not 100 <= status_code <= 599:
            raise ValueError(f"Invalid upstream status code: {status_code}")
        self.status_code = status_code
        self.headers = headers
        self.body = body

    def __repr__(self) -> str:
        return f"<UpstreamResponse {self.status_code} ({len(self.body)}b)>"


class CorsDecision:
    """Ordered Access-Control-* headers to emit on a response."""
    __slots__ = ('headers',)

    def __init__(self, headers: HeaderList) -> None:
        self.headers: HeaderList = headers

    @property
    def allow_origin(self) -> Optional[str]:
        for name, value in self.headers:
            if name.lower() == "access-control-allow-origin":
                return value
        return None

    def names(self) -> FrozenSet[str]:
        return frozenset(name.lower() for name, _ in self.headers)

    def __iter__(self):
        return iter(self.headers)

    def __repr__(self) -> str:
        return f"<CorsDecision origin={self.allow_origin!r}>"


class ProxyResponse:
    """What the server writes back to the client for one request."""
    __slots__ = ('status_code', 'headers', 'body', 'state')

    def __init__(
        self,
        status_code: int,
        headers: HeaderList,
        body: bytes = b"",
        state: RequestState = RequestState.RESPONDING
    ) -> None:
        self.status_code = status_code
        self.headers = headers
        self.body = body
        self.state = state

    def header(self, name: str) -> Optional[str]:
        """First value for a header name, case-insensitive."""
        wanted = name.lower()
        for key, value in self.headers:
            if key.lower() == wanted:
                return value
        return None

    def __repr__(self) -> str:
        return f"<ProxyResponse {self.status_code} ({len(self.body)}b) via {self.state.name}>"
