#Filename: proxy_handler.py
"""
PROXY HANDLER
Turns one InboundRequest into one ProxyResponse.

RECEIVED -> OPTIONS_SHORT_CIRCUIT ---------------> DONE
RECEIVED -> FORWARDING -> RESPONDING ------------> DONE
RECEIVED -> FORWARDING -> FAILED -> RESPONDING --> DONE

CORS headers are attached on every path.
"""

import json
import logging

from config import Config
from proxy_common import (
    UpstreamConnectionError, build_forwarded_headers, decide_cors,
    header_items, is_valid_header, strip_response_headers
)
from request_logger import RequestLogger
from structures import (
    BACKEND_FAILURE_MESSAGE, CorsDecision, ForwardedRequest, HeaderList,
    InboundRequest, ProxyResponse, RequestState, UpstreamResponse
)
from upstream_client import UpstreamClient

log = logging.getLogger("ProxyHandler")


class ProxyHandler:
    """
    Stateless per request: one instance serves every connection.
    Holds only the immutable Config and the shared collaborators.
    """
    __slots__ = ('config', 'upstream', 'request_log')

    def __init__(self, config: Config, upstream: UpstreamClient, request_log: RequestLogger) -> None:
        self.config = config
        self.upstream = upstream
        self.request_log = request_log

    def cors_for(self, request: InboundRequest) -> CorsDecision:
        return decide_cors(request.origin, self.config.allowed_origins)

    def build_forwarded_request(self, request: InboundRequest) -> ForwardedRequest:
        return ForwardedRequest(
            request.method,
            self.config.backend_target(request.target),
            build_forwarded_headers(request.headers, request.client_addr),
            request.body
        )

    async def handle(self, request: InboundRequest) -> ProxyResponse:
        state = RequestState.RECEIVED
        cors = self.cors_for(request)

        if request.method == "OPTIONS":
            state = self._transition(request, state, RequestState.OPTIONS_SHORT_CIRCUIT)
            return ProxyResponse(200, list(cors), b"", state)

        state = self._transition(request, state, RequestState.FORWARDING)
        self.request_log.log(
            f"Incoming request: {request.method} {request.target} "
            f"from {request.client_addr or 'Unknown'} "
            f"(User-Agent: {request.user_agent or 'Unknown'})"
        )

        forwarded = self.build_forwarded_request(request)
        try:
            upstream = await self.upstream.forward(
                forwarded.method, forwarded.url, forwarded.headers, forwarded.body,
                self.config.connect_timeout, self.config.total_timeout
            )
        except UpstreamConnectionError as e:
            state = self._transition(request, state, RequestState.FAILED)
            return self._failure_response(cors, e, state)

        state = self._transition(request, state, RequestState.RESPONDING)
        response = ProxyResponse(
            upstream.status_code,
            list(cors) + self.relay_headers(upstream, cors),
            upstream.body,
            state
        )
        self.request_log.log(
            f"Response: HTTP {upstream.status_code}, Body length: {len(upstream.body)}"
        )
        return response

    def relay_headers(self, upstream: UpstreamResponse, cors: CorsDecision) -> HeaderList:
        """
        Backend headers safe to send on: hop headers stripped, lines that would
        break framing skipped, CORS names left to the proxy's own decision.
        """
        taken = cors.names()
        out: HeaderList = []
        for name, value in header_items(strip_response_headers(upstream.headers)):
            if name.lower() in taken:
                continue
            if not is_valid_header(name, value):
                log.debug("Skipping malformed upstream header %r", name)
                continue
            out.append((name, value))
        return out

    def _failure_response(
        self, cors: CorsDecision, error: UpstreamConnectionError, state: RequestState
    ) -> ProxyResponse:
        self.request_log.log(f"Upstream Error: {error.message}")
        log.warning("Backend call failed (%s): %s", error.kind.value, error.message)
        body = json.dumps({"error": BACKEND_FAILURE_MESSAGE, "details": error.message}).encode()
        headers = list(cors) + [("Content-Type", "application/json")]
        return ProxyResponse(502, headers, body, state)

    @staticmethod
    def _transition(request: InboundRequest, old: RequestState, new: RequestState) -> RequestState:
        log.debug("%r: %s -> %s", request, old.name, new.name)
        return new
