"""Target URL validation.

The relay's route path carries the URL to fetch, e.g.
``/https://api.example.com/v1/ticker?pair=btc``. This module turns that path
into a ParsedTarget or rejects it, in a fixed order:

1. not an absolute URL with a host       -> InvalidURLError (404)
2. hostname matches the deny pattern      -> BlacklistedError (400)
3. hostname misses the allow pattern      -> NotWhitelistedError (400)
4. scheme other than http/https           -> UnsupportedSchemeError (400)
"""

import ipaddress
import re
import socket
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote, urlsplit

import httpx

from relay.app.core.config import Settings
from relay.app.exceptions import (
    BlacklistedError,
    InvalidURLError,
    NotWhitelistedError,
    UnsupportedSchemeError,
)

SUPPORTED_SCHEMES = ("http", "https")
DEFAULT_PORTS = {"http": 80, "https": 443}

# Escapes of ; / ? : @ & = + $ , # are kept, as decodeURI does
_RESERVED_ESCAPE = re.compile(r"%(?:2[346BCFbcf]|3[ABDFabdf]|40)")


def decode_uri(value: str) -> str:
    """Percent-decode value, leaving reserved characters encoded."""
    parts = []
    pos = 0
    for match in _RESERVED_ESCAPE.finditer(value):
        parts.append(unquote(value[pos:match.start()]))
        parts.append(match.group(0))
        pos = match.end()
    parts.append(unquote(value[pos:]))
    return "".join(parts)


def canonical_address(hostname: str) -> Optional[str]:
    """Standard spelling of an IP literal, or None for a host name.

    Accepts the shorthand IPv4 forms the resolver accepts (127.1, 2130706433,
    0x7f.0.0.1) and unwraps IPv4-mapped IPv6 addresses.
    """
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        try:
            address = ipaddress.IPv4Address(socket.inet_aton(hostname))
        except (OSError, ValueError):
            return None
    if address.version == 6 and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return str(address)


@dataclass(frozen=True)
class ParsedTarget:
    """A validated upstream target."""
    scheme: str
    hostname: str
    port: Optional[int]
    path: str  # path + query, always starting with "/"
    href: str
    netloc: str  # host[:port] without credentials, used for the Host header


class PolicyValidator:
    """Parses and classifies the target embedded in a request path."""

    def __init__(
        self,
        allow_pattern: str = r".*",
        deny_pattern: str = r"(?!)",
        route_prefix: str = "/",
    ):
        self.allow_pattern = re.compile(allow_pattern, re.IGNORECASE)
        self.deny_pattern = re.compile(deny_pattern, re.IGNORECASE)
        self.route_prefix = route_prefix

    @classmethod
    def from_settings(cls, app_settings: Settings) -> "PolicyValidator":
        return cls(
            allow_pattern=app_settings.whitelist_hostname_regex,
            deny_pattern=app_settings.blacklist_hostname_regex,
            route_prefix=app_settings.route_prefix,
        )

    def extract_target(self, raw_path: str, query_string: str = "") -> str:
        """Strip the route prefix, URL-decode, and re-attach the query string.

        Reserved escapes such as %2F and %23 survive decoding so they reach
        the target unchanged.
        """
        if raw_path.startswith(self.route_prefix):
            raw_path = raw_path[len(self.route_prefix):]
        else:
            raw_path = raw_path.lstrip("/")

        target = decode_uri(raw_path)
        if query_string:
            target += ("&" if "?" in target else "?") + query_string
        return target

    def parse(self, target: str) -> ParsedTarget:
        """Parse an absolute URL, raising InvalidURLError otherwise."""
        try:
            parts = urlsplit(target)
            hostname = parts.hostname
            port = parts.port
            # Host names httpx cannot encode would fail only once relayed
            httpx.URL(target).host
        except (ValueError, UnicodeError, httpx.InvalidURL) as e:
            raise InvalidURLError(f"Unable to parse url: {e}") from e

        if not parts.scheme or not hostname:
            raise InvalidURLError()

        scheme = parts.scheme.lower()
        host = f"[{hostname}]" if ":" in hostname else hostname
        netloc = f"{host}:{port}" if port is not None else host

        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"

        # Credentials stay in href so httpx can turn them into basic auth
        return ParsedTarget(
            scheme=scheme,
            hostname=hostname,
            port=port if port is not None else DEFAULT_PORTS.get(scheme),
            path=path,
            href=f"{scheme}://{parts.netloc}{path}",
            netloc=netloc,
        )

    def validate(self, raw_path: str, query_string: str = "") -> ParsedTarget:
        """Validate the target carried by a request path.

        Args:
            raw_path: Request path, still percent-encoded
            query_string: Raw query string of the inbound request

        Returns:
            The immutable ParsedTarget

        Raises:
            InvalidURLError, BlacklistedError, NotWhitelistedError,
            UnsupportedSchemeError
        """
        target = self.parse(self.extract_target(raw_path, query_string))

        names = [target.hostname]
        address = canonical_address(target.hostname)
        if address is not None and address != target.hostname:
            names.append(address)
        if any(self.deny_pattern.search(name) for name in names):
            raise BlacklistedError(target.hostname)

        if not self.allow_pattern.search(target.hostname):
            raise NotWhitelistedError(target.hostname)

        if target.scheme not in SUPPORTED_SCHEMES:
            raise UnsupportedSchemeError(target.scheme)

        return target
