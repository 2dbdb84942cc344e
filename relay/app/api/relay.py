"""Catch-all relay endpoint.

Every method on every path under the route prefix lands here. The path
carries the absolute target URL, e.g. ``GET /https://api.example.com/v1?x=1``.
"""

from typing import Tuple

from fastapi import APIRouter, Request, Response

from relay.app.core.logging import get_log_context, get_logger
from relay.app.services.policy import ParsedTarget
from relay.app.services.stream_relay import StreamRelay

logger = get_logger(__name__)
router = APIRouter()

RELAY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def get_client_address(request: Request) -> str:
    """Client IP: first X-Forwarded-For entry, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    if request.client:
        return request.client.host

    return "unknown"


def get_request_target(request: Request) -> Tuple[str, str]:
    """Undecoded path and query string of the inbound request."""
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    path = path.split("?", 1)[0]
    query_string = request.scope.get("query_string", b"").decode("latin-1")
    return path, query_string


def _display_url(target: ParsedTarget) -> str:
    # href without credentials
    return f"{target.scheme}://{target.netloc}{target.path}"


@router.api_route("/{target_path:path}", methods=RELAY_METHODS, include_in_schema=False)
async def relay_request(request: Request, target_path: str) -> Response:
    """Validate, admit, delay and relay one request.

    Errors raised here are RelayExceptions and become JSON responses in the
    application's exception handler.
    """
    state = request.app.state
    app_settings = state.settings

    path, query_string = get_request_target(request)
    target = state.validator.validate(path, query_string)

    if state.cors.is_preflight(request.method):
        return state.cors.preflight_response(request.headers)

    client_ip = get_client_address(request)
    decision = state.admission.reserve(client_ip, target.hostname)
    reservation = decision.reservation
    reservation.arm_guard(app_settings.upstream_timeout_seconds)

    grace_seconds = app_settings.release_grace_seconds

    def on_complete() -> None:
        reservation.complete(grace_seconds)

    try:
        await state.metrics.record_admission(decision.delay_ms)

        if app_settings.log_requests:
            logger.info(
                f"{request.method} {_display_url(target)} (delay {decision.delay_ms}ms)",
                extra=get_log_context(
                    client_ip=client_ip,
                    target=target.hostname,
                    method=request.method,
                    delay_ms=decision.delay_ms,
                ),
            )

        await state.scheduler.defer(decision.delay_ms)

        stream_relay: StreamRelay = request.state.stream_relay
        return await stream_relay.relay(request, target, client_ip, on_complete)
    except BaseException:
        on_complete()
        raise
