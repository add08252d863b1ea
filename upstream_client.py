#Filename: upstream_client.py
"""
UPSTREAM CLIENT
Performs the single outbound call for a relayed request.
Wraps one pooled httpx.AsyncClient; each call is bounded by a connect-phase
timeout and a total-call timeout.
"""

import asyncio
import logging
import ssl
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Optional, Union

import httpx

from config import Config
from proxy_common import ConnectionErrorKind, UpstreamConnectionError
from structures import UpstreamResponse

log = logging.getLogger("UpstreamClient")

# Set on every httpx.AsyncClient unless removed.
CLIENT_DEFAULT_HEADERS = ("Accept", "Accept-Encoding", "Connection", "User-Agent")


def _no_cookie_jar() -> CookieJar:
    # Set-Cookie from the backend belongs to the browser, not to the proxy.
    return CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))


def build_ssl_verify(config: Config) -> Union[bool, ssl.SSLContext]:
    """The `verify` argument for httpx, honouring the TLS opt-out."""
    if not config.verify_tls:
        log.warning(
            "TLS certificate verification toward %s is DISABLED. "
            "Only use this for trusted internal backends.", config.backend_url
        )
        return False
    if config.ca_bundle:
        return ssl.create_default_context(cafile=config.ca_bundle)
    return True


class UpstreamClient:
    """
    Forwards one request to the backend and returns what it answered.

    Redirects are followed only while they stay on the backend origin. An
    off-origin redirect is handed back untouched so the client decides.
    """

    def __init__(
        self,
        config: Config,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.config = config
        self._client = httpx.AsyncClient(
            verify=build_ssl_verify(config),
            timeout=httpx.Timeout(config.total_timeout, connect=config.connect_timeout),
            follow_redirects=False,
            cookies=_no_cookie_jar(),
            trust_env=False,
            transport=transport,
        )
        # Only headers taken from the inbound request go to the backend.
        for name in CLIENT_DEFAULT_HEADERS:
            self._client.headers.pop(name, None)

    async def __aenter__(self) -> "UpstreamClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _same_origin(self, url: httpx.URL) -> bool:
        port = url.port or (443 if url.scheme == "https" else 80)
        return (url.scheme, url.host.lower(), port) == self.config.backend_origin

    async def forward(
        self,
        method: str,
        url: str,
        headers: httpx.Headers,
        body: Optional[bytes] = None,
        connect_timeout: Optional[float] = None,
        total_timeout: Optional[float] = None
    ) -> UpstreamResponse:
        """
        Issues the call. Raises UpstreamConnectionError(TIMEOUT) when either
        timeout elapses and UpstreamConnectionError(UNREACHABLE) for DNS,
        refused, reset, protocol or decoding failures.
        """
        connect_timeout = connect_timeout or self.config.connect_timeout
        total_timeout = total_timeout or self.config.total_timeout

        try:
            return await asyncio.wait_for(
                self._send(method, url, headers, body, connect_timeout, total_timeout),
                timeout=total_timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            message = str(exc) or f"Backend did not respond within {total_timeout:g}s"
            raise UpstreamConnectionError(ConnectionErrorKind.TIMEOUT, message) from exc
        except (httpx.RequestError, httpx.InvalidURL) as exc:
            message = str(exc) or type(exc).__name__
            raise UpstreamConnectionError(ConnectionErrorKind.UNREACHABLE, message) from exc

    async def _send(
        self,
        method: str,
        url: str,
        headers: httpx.Headers,
        body: Optional[bytes],
        connect_timeout: float,
        total_timeout: float
    ) -> UpstreamResponse:
        request = self._client.build_request(
            method, url, headers=headers, content=body,
            timeout=httpx.Timeout(total_timeout, connect=connect_timeout)
        )
        response = await self._client.send(request)

        hops = 0
        while response.next_request is not None:
            next_request = response.next_request
            if not self._same_origin(next_request.url):
                log.info("Not following off-origin redirect to %s", next_request.url)
                break
            hops += 1
            if hops > self.config.max_redirects:
                raise UpstreamConnectionError(
                    ConnectionErrorKind.UNREACHABLE,
                    f"Exceeded maximum allowed redirects ({self.config.max_redirects})"
                )
            log.debug("Following redirect %d -> %s", response.status_code, next_request.url)
            response = await self._client.send(next_request)

        return UpstreamResponse(response.status_code, response.headers, response.content)
