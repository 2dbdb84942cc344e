"""Custom exceptions for the relay application.

Every failure a single request can hit maps to one of these. They are
translated into one terminal HTTP response at the request boundary.
"""


class RelayException(Exception):
    """Base class for relay exceptions with HTTP status code.

    All custom exceptions inherit from this class and define their
    status_code and error_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error_code: str = "relay_error"

    def __init__(self, message: str = "Relay error"):
        self.message = message
        super().__init__(message)


# ----------------------------------------------------------------------------
# Target policy rejections
# ----------------------------------------------------------------------------

class InvalidURLError(RelayException):
    """The path does not hold an absolute URL with a host.

    Maps to HTTP 404 Not Found.
    """
    status_code = 404
    error_code = "invalid_url"

    def __init__(self, detail: str = "relative URLs are not supported"):
        super().__init__(detail)


class BlacklistedError(RelayException):
    """The target hostname matches the deny pattern.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400
    error_code = "blacklisted"

    def __init__(self, hostname: str):
        self.hostname = hostname
        super().__init__(f"requests to {hostname} are not allowed")


class NotWhitelistedError(RelayException):
    """The target hostname does not match the allow pattern.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400
    error_code = "not_whitelisted"

    def __init__(self, hostname: str):
        self.hostname = hostname
        super().__init__(f"{hostname} is not on the list of allowed hosts")


class UnsupportedSchemeError(RelayException):
    """The target scheme is neither http nor https.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400
    error_code = "unsupported_scheme"

    def __init__(self, scheme: str):
        self.scheme = scheme
        super().__init__("only http and https are supported")


# ----------------------------------------------------------------------------
# Admission and size limits
# ----------------------------------------------------------------------------

class AdmissionDeniedError(RelayException):
    """The client already has the maximum number of requests in flight.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "too_many_requests"

    def __init__(self, client_ip: str, limit: int):
        self.client_ip = client_ip
        self.limit = limit
        super().__init__(
            f"enhance your calm: at most {limit} simultaneous requests are allowed per client"
        )


class PayloadTooLargeError(RelayException):
    """The request or response body reached the size limit.

    Maps to HTTP 413 Payload Too Large.
    """
    status_code = 413
    error_code = "payload_too_large"

    def __init__(self, limit: int, direction: str = "request"):
        self.limit = limit
        self.direction = direction
        super().__init__(
            f"the content in the request or response cannot exceed {limit} bytes."
        )


# ----------------------------------------------------------------------------
# Upstream and stream failures
# ----------------------------------------------------------------------------

class UpstreamUnreachableError(RelayException):
    """The target host name could not be resolved.

    Maps to HTTP 502 Bad Gateway.
    """
    status_code = 502
    error_code = "bad_gateway"

    def __init__(self, href: str):
        self.href = href
        super().__init__(f"Host for {href} cannot be found.")


class UpstreamTransportError(RelayException):
    """Any other failure talking to the upstream (connect, TLS, timeout).

    Maps to HTTP 500; the cause is logged, never sent to the client.
    """
    status_code = 500
    error_code = "internal_error"

    def __init__(self, href: str):
        self.href = href
        super().__init__("Internal server error")


class StreamIOError(RelayException):
    """Reading or writing a body failed before response headers went out.

    Maps to HTTP 500.
    """
    status_code = 500
    error_code = "stream_error"

    def __init__(self, message: str = "Stream Error"):
        super().__init__(message)


class ResponseAbortedError(Exception):
    """Raised from a response body that is already on the wire.

    Headers are sent, so the only way out is dropping the connection. Not a
    RelayException: no handler may try to turn it into a response.
    """
