"""Bidirectional streaming relay between a client and an upstream target.

Bodies are never buffered whole: the inbound body is streamed to the upstream
and the upstream body is streamed back, each through a byte counter that
aborts the exchange once it reaches the configured limit.

The response status can only change until the first byte goes out. A limit
hit before that (declared Content-Length, or the first chunk) becomes a 413;
a limit hit later drops the downstream connection.
"""

import asyncio
import socket
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Mapping, Optional, Tuple

import httpx
from fastapi import Request
from starlette.requests import ClientDisconnect
from starlette.responses import StreamingResponse

from relay.app.core.logging import get_logger
from relay.app.exceptions import (
    PayloadTooLargeError,
    ResponseAbortedError,
    StreamIOError,
    UpstreamTransportError,
    UpstreamUnreachableError,
)
from relay.app.services.policy import ParsedTarget

logger = get_logger(__name__)

# RFC 7230 section 6.1, plus the non-standard proxy-connection
HOP_BY_HOP_HEADERS = frozenset((
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
))

# Headers the relay rewrites itself on the way out
_REWRITTEN_REQUEST_HEADERS = frozenset(("host", "origin", "x-forwarded-for"))

_CLIENT_DEFAULT_HEADERS = ("accept", "accept-encoding", "user-agent")

_NAME_RESOLUTION_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "name resolution",
    "getaddrinfo failed",
    "no address associated with hostname",
)


def is_name_resolution_error(exc: Optional[BaseException]) -> bool:
    """True when exc, or anything in its cause chain, is a DNS lookup failure."""
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, socket.gaierror):
            return True
        message = str(exc).lower()
        if any(marker in message for marker in _NAME_RESOLUTION_MARKERS):
            return True
        exc = exc.__cause__ or exc.__context__
    return False


def call_once(callback: Callable[[], None]) -> Callable[[], None]:
    called = False

    def wrapper() -> None:
        nonlocal called
        if not called:
            called = True
            callback()

    return wrapper


class RelayedResponse(StreamingResponse):
    """StreamingResponse that releases its upstream even if the body never starts.

    The server may cancel the response before the body iterator is first
    advanced (client gone before headers were sent), in which case the
    iterator's own cleanup never runs.
    """

    def __init__(
        self,
        content: AsyncIterator[bytes],
        upstream: httpx.Response,
        on_complete: Callable[[], None],
        status_code: int = 200,
    ):
        super().__init__(content, status_code=status_code)
        self.upstream = upstream
        self.on_complete = on_complete

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await asyncio.shield(self.body_iterator.aclose())
            self.on_complete()
            await asyncio.shield(self.upstream.aclose())


@dataclass
class RelayCounters:
    """Bytes moved in each direction for one request."""
    request_bytes: int = 0
    response_bytes: int = 0


class StreamRelay:
    """Forwards one request to its target and streams the answer back.

    Usage:
        relay = StreamRelay(http_client, max_body_bytes=100_000)
        response = await relay.relay(request, target, client_ip, on_complete)

    on_complete is called exactly once: when the response body finishes,
    fails, is aborted, or when the relay raises before a response exists.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        max_body_bytes: int,
        public_address: str = "",
    ):
        self.client = client
        self.max_body_bytes = max_body_bytes
        self.public_address = public_address

    # ------------------------------------------------------------------
    # Headers
    # ------------------------------------------------------------------

    def build_upstream_headers(
        self,
        headers: Mapping[str, str],
        target: ParsedTarget,
        client_ip: str,
    ) -> List[Tuple[str, str]]:
        """Inbound headers as they should reach the target.

        Hop-by-hop headers and Origin are dropped, Host points at the target,
        and X-Forwarded-For gains this server's address.
        """
        forwarded_for: Optional[str] = None
        result: List[Tuple[str, str]] = []

        for name, value in headers.items():
            lname = name.lower()
            if lname == "x-forwarded-for":
                forwarded_for = value if forwarded_for is None else f"{forwarded_for}, {value}"
                continue
            if lname in HOP_BY_HOP_HEADERS or lname in _REWRITTEN_REQUEST_HEADERS:
                continue
            result.append((lname, value))

        result.append(("host", target.netloc))

        chain = forwarded_for or client_ip
        if self.public_address:
            chain = f"{chain}, {self.public_address}" if chain else self.public_address
        if chain:
            result.append(("x-forwarded-for", chain))

        return result

    @staticmethod
    def build_downstream_headers(headers: httpx.Headers) -> List[Tuple[bytes, bytes]]:
        """Upstream response headers as raw ASGI pairs, duplicates kept."""
        return [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in headers.multi_items()
            if name.lower() not in HOP_BY_HOP_HEADERS
            and name.lower() != "access-control-allow-origin"
        ]

    # ------------------------------------------------------------------
    # Size checks
    # ------------------------------------------------------------------

    def _check_declared_length(self, value: Optional[str], direction: str) -> None:
        if not value:
            return
        try:
            declared = int(value)
        except ValueError:
            return
        if declared >= self.max_body_bytes:
            raise PayloadTooLargeError(self.max_body_bytes, direction)

    @staticmethod
    def _has_body(headers: Mapping[str, str]) -> bool:
        if "transfer-encoding" in headers:
            return True
        content_length = headers.get("content-length")
        return bool(content_length) and content_length.strip() != "0"

    async def iter_request_body(
        self, request: Request, counters: RelayCounters
    ) -> AsyncIterator[bytes]:
        """Inbound body chunks, aborting once the limit is reached.

        The chunk that reaches the limit is not forwarded.
        """
        async for chunk in request.stream():
            if not chunk:
                continue
            counters.request_bytes += len(chunk)
            if counters.request_bytes >= self.max_body_bytes:
                raise PayloadTooLargeError(self.max_body_bytes, "request")
            yield chunk

    # ------------------------------------------------------------------
    # Relay
    # ------------------------------------------------------------------

    async def relay(
        self,
        request: Request,
        target: ParsedTarget,
        client_ip: str,
        on_complete: Callable[[], None],
    ) -> StreamingResponse:
        """Relay request to target.

        Raises:
            PayloadTooLargeError: Either body reached the limit before the
                response started
            UpstreamUnreachableError: Target host name does not resolve
            UpstreamTransportError: Any other upstream failure
            StreamIOError: A body stream failed before the response started
        """
        on_complete = call_once(on_complete)
        try:
            return await self._relay(request, target, client_ip, on_complete)
        except BaseException:
            on_complete()
            raise

    async def _relay(
        self,
        request: Request,
        target: ParsedTarget,
        client_ip: str,
        on_complete: Callable[[], None],
    ) -> StreamingResponse:
        counters = RelayCounters()

        self._check_declared_length(request.headers.get("content-length"), "request")

        content = None
        if self._has_body(request.headers):
            content = self.iter_request_body(request, counters)

        upstream_request = self.client.build_request(
            request.method,
            target.href,
            headers=self.build_upstream_headers(request.headers, target, client_ip),
            content=content,
        )
        # httpx merges in its own client defaults; relay only what the caller sent
        for name in _CLIENT_DEFAULT_HEADERS:
            if name not in request.headers:
                upstream_request.headers.pop(name, None)

        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except PayloadTooLargeError:
            logger.warning(
                f"Request body for {target.href} reached {self.max_body_bytes} bytes, aborting"
            )
            raise
        except ClientDisconnect as e:
            logger.info(f"Client disconnected while sending body for {target.href}")
            raise StreamIOError() from e
        except httpx.ConnectError as e:
            if is_name_resolution_error(e):
                logger.info(f"Host for {target.href} cannot be found: {e}")
                raise UpstreamUnreachableError(target.href) from e
            logger.error(f"Proxy Request Error ({target.href}): {e!r}")
            raise UpstreamTransportError(target.href) from e
        except httpx.TransportError as e:
            logger.error(f"Proxy Request Error ({target.href}): {e!r}")
            raise UpstreamTransportError(target.href) from e
        except httpx.StreamError as e:
            logger.error(f"Stream Error ({target.href}): {e!r}")
            raise StreamIOError() from e

        try:
            return await self._start_response(request, upstream, target, counters, on_complete)
        except BaseException:
            await asyncio.shield(upstream.aclose())
            raise

    async def _start_response(
        self,
        request: Request,
        upstream: httpx.Response,
        target: ParsedTarget,
        counters: RelayCounters,
        on_complete: Callable[[], None],
    ) -> StreamingResponse:
        if request.method.upper() != "HEAD":
            self._check_declared_length(upstream.headers.get("content-length"), "response")

        raw = upstream.aiter_raw()
        try:
            first = await raw.__anext__()
        except StopAsyncIteration:
            first = b""
        except httpx.TransportError as e:
            logger.error(f"Stream Error ({target.href}): {e!r}")
            raise StreamIOError() from e

        counters.response_bytes += len(first)
        if counters.response_bytes >= self.max_body_bytes:
            logger.warning(
                f"Response from {target.href} reached {self.max_body_bytes} bytes, aborting"
            )
            raise PayloadTooLargeError(self.max_body_bytes, "response")

        response = RelayedResponse(
            self.relay_body(upstream, raw, first, target, counters, on_complete),
            upstream=upstream,
            on_complete=on_complete,
            status_code=upstream.status_code,
        )
        response.raw_headers = self.build_downstream_headers(upstream.headers)
        return response

    async def relay_body(
        self,
        upstream: httpx.Response,
        raw: AsyncIterator[bytes],
        first: bytes,
        target: ParsedTarget,
        counters: RelayCounters,
        on_complete: Callable[[], None],
    ) -> AsyncIterator[bytes]:
        """Downstream body: the prefetched chunk, then the rest of the upstream body."""
        try:
            if first:
                yield first
            async for chunk in raw:
                counters.response_bytes += len(chunk)
                if counters.response_bytes >= self.max_body_bytes:
                    logger.warning(
                        f"Response from {target.href} reached {self.max_body_bytes} bytes "
                        "mid-stream, dropping connection"
                    )
                    raise ResponseAbortedError(
                        f"response body exceeded {self.max_body_bytes} bytes"
                    )
                yield chunk
        except httpx.TransportError as e:
            logger.error(f"Stream Error ({target.href}): {e!r}")
            raise ResponseAbortedError("Stream Error") from e
        finally:
            on_complete()
            await asyncio.shield(upstream.aclose())
