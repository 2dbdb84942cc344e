"""Access-Control-Allow-Origin on every response.

Raw ASGI middleware: it rewrites the response start message, so it covers
relayed upstream responses, error responses and streamed bodies alike.
"""

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from relay.app.services.cors import CORSInjector


class CORSHeaderMiddleware:
    """Sets Access-Control-Allow-Origin, replacing any upstream value.

    Usage:
        app.add_middleware(CORSHeaderMiddleware)
    """

    def __init__(self, app: ASGIApp, injector: CORSInjector | None = None):
        self.app = app
        self.injector = injector or CORSInjector()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        origin = Headers(scope=scope).get("origin")
        allow_origin = self.injector.allow_origin(origin).encode("latin-1")

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = [
                    (name, value)
                    for name, value in message.get("headers", [])
                    if name.lower() != b"access-control-allow-origin"
                ]
                headers.append((b"access-control-allow-origin", allow_origin))
                message = {**message, "headers": headers}
            await send(message)

        await self.app(scope, receive, send_with_cors)
