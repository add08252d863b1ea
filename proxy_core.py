#Filename: proxy_core.py
"""
ASYNC PROXY CORE
Inbound HTTP/1.1 surface of the relay.
Parses requests off the client stream, hands them to the ProxyHandler and
writes the responses back. One asyncio task per connection.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from config import Config
from proxy_common import (
    ProxyError, PayloadTooLargeError, UnsupportedTransferCodingError, STRICT_HEADER_PATTERN,
    CHUNK_SIZE_PATTERN, MAX_HEADER_LIST_SIZE, COMPACTION_THRESHOLD, READ_CHUNK_SIZE, decide_cors
)
from proxy_handler import ProxyHandler
from request_logger import RequestLogger
from structures import InboundRequest, ProxyResponse
from upstream_client import UpstreamClient

log = logging.getLogger("ProxyCore")


class Http11ConnectionHandler:
    """
    Handles one client connection: strict HTTP/1.1 parsing, body framing
    (Content-Length or chunked) and keep-alive.
    """
    __slots__ = ('reader', 'writer', 'proxy_handler', 'config', 'client_addr', 'buffer', '_buffer_offset')

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        proxy_handler: ProxyHandler,
        config: Config
    ):
        raw_addr = writer.get_extra_info('peername')
        self.client_addr: Optional[str] = (
            str(raw_addr[0]) if isinstance(raw_addr, tuple) and len(raw_addr) >= 2 else None
        )
        self.reader = reader
        self.writer = writer
        self.proxy_handler = proxy_handler
        self.config = config
        # Bytes before _buffer_offset are consumed.
        self.buffer = bytearray()
        self._buffer_offset = 0

    @property
    def _pending(self) -> int:
        return len(self.buffer) - self._buffer_offset

    async def _fill(self) -> bool:
        """Appends the next read to the buffer. False at EOF."""
        if self._buffer_offset > COMPACTION_THRESHOLD and self._buffer_offset > len(self.buffer) // 2:
            del self.buffer[:self._buffer_offset]
            self._buffer_offset = 0
        try:
            data = await asyncio.wait_for(
                self.reader.read(READ_CHUNK_SIZE), timeout=self.config.idle_timeout
            )
        except asyncio.TimeoutError as exc:
            raise ProxyError("Read Timeout (Idle)") from exc
        self.buffer.extend(data)
        return bool(data)

    async def _read_line(self) -> bytes:
        """
        Next line without its terminator; CRLF and bare LF both end a line.
        Returns b"" at a clean end of stream.
        """
        while True:
            lf_index = self.buffer.find(b'\n', self._buffer_offset)
            if lf_index != -1:
                break
            if self._pending > MAX_HEADER_LIST_SIZE:
                raise ProxyError("Header Line Exceeded Max Length")
            if not await self._fill():
                if self._pending:
                    raise ProxyError("Incomplete message")
                return b""

        if lf_index - self._buffer_offset > MAX_HEADER_LIST_SIZE:
            raise ProxyError("Header Line Exceeded Max Length")
        line = bytes(self.buffer[self._buffer_offset:lf_index])
        self._buffer_offset = lf_index + 1
        return line[:-1] if line.endswith(b'\r') else line

    async def run(self) -> None:
        """Main loop: one request/response exchange per iteration."""
        try:
            while True:
                start_ts = time.time()
                try:
                    line = await self._read_line()
                except ProxyError as e:
                    log.debug("Framing Error from %s: %s", self.client_addr, e)
                    if "Timeout" not in str(e) and "Incomplete" not in str(e):
                        await self._send_error(400, "Bad Request")
                    return

                if not line:
                    break

                try:
                    parts = line.split(b' ', 2)
                    if len(parts) != 3:
                        raise ValueError
                    method_b, target_b, version_b = parts
                    method = method_b.decode('ascii')
                    target = target_b.decode('ascii')
                    if not version_b.startswith(b'HTTP/1.'):
                        raise ValueError
                except ValueError:
                    await self._send_error(400, "Malformed Request Line")
                    return

                headers: List[Tuple[bytes, bytes]] = []
                headers_dict: Dict[str, str] = {}
                try:
                    while True:
                        h_line = await self._read_line()
                        if not h_line:
                            break
                        if h_line[0] in (0x20, 0x09):
                            raise ProxyError("Obsolete Line Folding Rejected")
                        match = STRICT_HEADER_PATTERN.match(h_line)
                        if not match:
                            raise ProxyError("Invalid Header Syntax")
                        key = match.group(1).decode('ascii')
                        raw_val = match.group(2).strip()
                        val = raw_val.decode('latin-1')
                        headers.append((match.group(1), raw_val))
                        headers_dict[key.lower()] = val
                except ProxyError as e:
                    await self._send_error(400, str(e), headers_dict.get('origin'))
                    return

                try:
                    body = await self._read_body(headers_dict)
                except PayloadTooLargeError as e:
                    log.info("Rejected oversize body from %s: %s", self.client_addr, e)
                    await self._send_error(413, "Payload Too Large", headers_dict.get('origin'))
                    return
                except UnsupportedTransferCodingError as e:
                    await self._send_error(501, str(e), headers_dict.get('origin'))
                    return
                except ProxyError as e:
                    await self._send_error(400, str(e), headers_dict.get('origin'))
                    return

                keep_alive = self._wants_keep_alive(version_b, headers_dict)
                request = InboundRequest(
                    method, self._origin_form(target), httpx.Headers(headers), body, self.client_addr
                )
                response = await self.proxy_handler.handle(request)
                await self._write_response(response, keep_alive, request.method)
                log.debug(
                    "%s %s -> %d in %.1fms", method, request.target,
                    response.status_code, (time.time() - start_ts) * 1000
                )
                if not keep_alive:
                    break
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            log.debug("Client %s went away: %s", self.client_addr, e)
        except Exception: # pylint: disable=broad-exception-caught
            log.exception("HTTP/1.1 Proxy Error (client %s)", self.client_addr)
        finally:
            if not self.writer.is_closing():
                self.writer.close()

    @staticmethod
    def _origin_form(target: str) -> str:
        """Reduces an absolute-form target to path+query."""
        if target.startswith(("http://", "https://")):
            p = urlsplit(target)
            path = p.path if p.path else "/"
            return path + (("?" + p.query) if p.query else "")
        if not target.startswith("/"):
            return "/" + target
        return target

    @staticmethod
    def _wants_keep_alive(version_b: bytes, headers_dict: Dict[str, str]) -> bool:
        conn = headers_dict.get('connection', '').lower()
        if 'close' in conn:
            return False
        if version_b == b'HTTP/1.0':
            return 'keep-alive' in conn
        return True

    async def _read_body(self, headers_dict: Dict[str, str]) -> bytes:
        """Reads the request body framed by Transfer-Encoding or Content-Length."""
        te = headers_dict.get('transfer-encoding')
        cl = headers_dict.get('content-length')

        if te:
            codings = [c.strip().lower() for c in te.split(',')]
            if codings[-1] != 'chunked':
                raise ProxyError("Bad Transfer-Encoding")
            if len(codings) > 1:
                raise UnsupportedTransferCodingError(f"Unsupported Transfer-Encoding: {te}")
            return await self._read_chunked_body()
        if cl:
            try:
                length = int(cl)
                if length < 0:
                    raise ValueError
            except ValueError as exc:
                raise ProxyError("Invalid Content-Length") from exc
            return await self._read_bytes(length)
        return b""

    async def _read_chunked_body(self) -> bytes:
        """De-chunks the body. Chunk extensions and trailers are discarded."""
        parts = []
        total = 0
        while True:
            size_field = (await self._read_line()).split(b';', 1)[0].strip()
            if not CHUNK_SIZE_PATTERN.match(size_field):
                raise ProxyError("Invalid chunk size")
            size = int(size_field, 16)

            if size == 0:
                while await self._read_line():
                    pass
                return b"".join(parts)

            total += size
            if total > self.config.max_body_size:
                raise PayloadTooLargeError(
                    f"Chunked body exceeded {self.config.max_body_size} bytes."
                )
            parts.append(await self._read_bytes(size))
            if await self._read_line():
                raise ProxyError("Missing chunk terminator")

    async def _read_bytes(self, n: int) -> bytes:
        """Reads exactly n bytes from the stream."""
        if n > self.config.max_body_size:
            raise PayloadTooLargeError(f"Content-Length {n} exceeds limit.")
        while self._pending < n:
            if not await self._fill():
                raise ProxyError("Incomplete read")

        chunk = bytes(self.buffer[self._buffer_offset:self._buffer_offset + n])
        self._buffer_offset += n
        return chunk

    async def _write_response(
        self,
        response: ProxyResponse,
        keep_alive: bool,
        method: Optional[str] = None
    ) -> None:
        """
        Serializes a ProxyResponse.

        Content-Length is computed from the body written, except for messages
        that never carry one: HEAD and 304 keep the backend's value, while 1xx
        and 204 get none at all.
        """
        status = response.status_code
        forbids_length = status < 200 or status == 204
        bodiless = forbids_length or status == 304 or method == "HEAD"
        relay_length = bodiless and not forbids_length

        reason = httpx.codes.get_reason_phrase(status) or "Unknown"
        buf = [f"HTTP/1.1 {status} {reason}\r\n".encode('ascii')]
        for k, v in response.headers:
            if k.lower() == 'content-length' and not relay_length:
                continue
            buf.append(f"{k}: {v}\r\n".encode('latin-1', 'replace'))
        if not bodiless:
            buf.append(f"Content-Length: {len(response.body)}\r\n".encode('ascii'))
        if not keep_alive:
            buf.append(b"Connection: close\r\n")
        buf.append(b"\r\n")

        self.writer.write(b"".join(buf))
        if response.body and not bodiless:
            self.writer.write(response.body)
        await self.writer.drain()

    async def _send_error(self, code: int, message: str, origin: Optional[str] = None) -> None:
        """Sends a local error response, CORS headers included, and closes."""
        cors = decide_cors(origin, self.config.allowed_origins)
        body = message.encode('utf-8')
        response = ProxyResponse(code, list(cors) + [("Content-Type", "text/plain")], body)
        try:
            await self._write_response(response, keep_alive=False)
        except Exception: # pylint: disable=broad-exception-caught
            log.debug("Could not deliver %d to %s", code, self.client_addr)


async def create_proxy_server(
    config: Config,
    proxy_handler: ProxyHandler,
    host: Optional[str] = None,
    port: Optional[int] = None
) -> asyncio.AbstractServer:
    """Starts the TCP server; each connection gets its own handler task."""
    async def _handle(r: asyncio.StreamReader, w: asyncio.StreamWriter) -> None:
        await Http11ConnectionHandler(r, w, proxy_handler, config).run()

    return await asyncio.start_server(
        _handle,
        host if host is not None else config.listen_host,
        port if port is not None else config.listen_port
    )


def bound_address(server: asyncio.AbstractServer) -> Tuple[str, int]:
    sockname = server.sockets[0].getsockname()
    return str(sockname[0]), int(sockname[1])


async def serve(config: Config) -> None:
    """
    Builds every component from the config and serves until cancelled.
    """
    request_log = RequestLogger(config.log_destination)
    try:
        async with UpstreamClient(config) as upstream:
            handler = ProxyHandler(config, upstream, request_log)
            server = await create_proxy_server(config, handler)
            host, port = bound_address(server)
            log.info("CORS relay listening on %s:%d -> %s", host, port, config.backend_url)

            async with server:
                try:
                    await server.serve_forever()
                except asyncio.CancelledError:
                    pass
                finally:
                    log.info("Proxy stopped")
                    server.close()
                    await server.wait_closed()
    finally:
        request_log.close()
