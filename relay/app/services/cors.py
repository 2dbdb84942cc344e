"""Cross-origin headers for relayed responses.

The relay exists so browsers can call APIs that do not speak CORS, so it
answers every origin: the caller's Origin is reflected, or "*" when there is
none. Preflight requests are answered by the relay itself and never reach
admission control or the upstream.
"""

from typing import Dict, Mapping, Optional

from fastapi import Response

ALLOW_ORIGIN = "Access-Control-Allow-Origin"
ALLOW_HEADERS = "Access-Control-Allow-Headers"
ALLOW_METHODS = "Access-Control-Allow-Methods"


class CORSInjector:
    """Builds the CORS headers for a request."""

    def allow_origin(self, origin: Optional[str]) -> str:
        return origin if origin else "*"

    def is_preflight(self, method: str) -> bool:
        return method.upper() == "OPTIONS"

    def preflight_headers(self, headers: Mapping[str, str]) -> Dict[str, str]:
        """Reflect the requested headers and method back as allowed."""
        result = {ALLOW_ORIGIN: self.allow_origin(headers.get("origin"))}

        request_headers = headers.get("access-control-request-headers")
        if request_headers:
            result[ALLOW_HEADERS] = request_headers

        request_method = headers.get("access-control-request-method")
        if request_method:
            result[ALLOW_METHODS] = request_method

        return result

    def preflight_response(self, headers: Mapping[str, str]) -> Response:
        """Terminal 204 answer to an OPTIONS request."""
        return Response(status_code=204, headers=self.preflight_headers(headers))
