"""Shared HTTP client management for connection pooling.

One upstream client is created on application startup and shared by every
relayed request, so keep-alive connections to popular targets are reused.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import httpx

from relay.app.core.config import Settings, settings as default_settings


def build_timeout(app_settings: Settings) -> httpx.Timeout:
    """Granular timeouts for upstream requests.

    read/write use the proxy request timeout: it bounds every wait on the
    upstream, not the total duration of a streamed body.
    """
    return httpx.Timeout(
        connect=app_settings.httpx_connect_timeout,
        read=app_settings.upstream_timeout_seconds,
        write=app_settings.upstream_timeout_seconds,
        pool=app_settings.httpx_pool_timeout,
    )


def create_http_client(app_settings: Optional[Settings] = None) -> httpx.AsyncClient:
    """Create an upstream client configured from settings.

    Redirects are relayed to the caller rather than followed, so a target
    cannot bounce the relay onto a denied host.
    """
    app_settings = app_settings or default_settings

    limits = httpx.Limits(
        max_connections=app_settings.httpx_max_connections,
        max_keepalive_connections=app_settings.httpx_max_keepalive_connections,
        keepalive_expiry=app_settings.httpx_keepalive_expiry,
    )

    return httpx.AsyncClient(
        timeout=build_timeout(app_settings),
        limits=limits,
        follow_redirects=False,
        trust_env=False,
    )


@asynccontextmanager
async def init_http_client(
    app_settings: Optional[Settings] = None,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Create the shared client for the application lifespan and close it on exit.

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with init_http_client(settings) as client:
                yield {"http_client": client}
    """
    client = create_http_client(app_settings)
    try:
        yield client
    finally:
        await client.aclose()
