"""Discovery of this server's public address for X-Forwarded-For."""

from typing import Optional

import httpx

from relay.app.core.config import Settings
from relay.app.core.logging import get_logger

logger = get_logger(__name__)


def parse_address_answer(response: httpx.Response) -> Optional[str]:
    """Read the address from a lookup service answer.

    Accepts a JSON object with an "ip" field or a plain-text body.
    """
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            payload = response.json()
        except ValueError:
            return None
        if isinstance(payload, dict) and payload.get("ip"):
            return str(payload["ip"]).strip()
        return None

    text = response.text.strip()
    return text or None


async def resolve_public_address(client: httpx.AsyncClient, app_settings: Settings) -> str:
    """Return the configured address, or look it up when a lookup URL is set.

    Returns an empty string when neither yields an address; the relay then
    leaves its own hop out of X-Forwarded-For.
    """
    if app_settings.public_address:
        return app_settings.public_address
    if not app_settings.public_address_lookup_url:
        return ""

    try:
        response = await client.get(app_settings.public_address_lookup_url)
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"Public address lookup failed: {e!r}")
        return ""

    address = parse_address_answer(response)
    if address is None:
        logger.warning(
            f"Public address lookup at {app_settings.public_address_lookup_url} "
            "returned no address"
        )
        return ""

    logger.info(f"Public address resolved to {address}")
    return address
