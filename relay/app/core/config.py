import re

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Loopback, RFC 1918, link-local and unspecified addresses, plus localhost names.
DEFAULT_BLACKLIST_HOSTNAME_REGEX = (
    r"^(?:"
    r"localhost|.*\.localhost|"
    r"127(?:\.\d{1,3}){3}|"
    r"10(?:\.\d{1,3}){3}|"
    r"192\.168(?:\.\d{1,3}){2}|"
    r"172\.(?:1[6-9]|2\d|3[01])(?:\.\d{1,3}){2}|"
    r"169\.254(?:\.\d{1,3}){2}|"
    r"0\.0\.0\.0|"
    r"::1?|"
    r"f[cd][0-9a-f]{2}:.*|"
    r"fe80:.*"
    r")$"
)


class Settings(BaseSettings):
    """Relay settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables exception messages in generic 500 responses
    debug: bool = False

    # Listener
    host: str = "0.0.0.0"
    port: int = 3000

    # Path prefix in front of the embedded target URL ("/" or e.g. "/fetch/")
    route_prefix: str = "/"

    # Admission control
    enable_rate_limiting: bool = True
    max_simultaneous_requests_per_ip: int = 15
    increment_delay_ms: int = 500
    release_grace_ms: int = 2000

    # Upstream relay
    proxy_request_timeout_ms: int = 10000
    max_request_length: int = 100000  # bytes, applied to each direction

    # Hostname policy (Python regular expressions, matched with re.search)
    whitelist_hostname_regex: str = r".*"
    blacklist_hostname_regex: str = DEFAULT_BLACKLIST_HOSTNAME_REGEX

    # Client state maintenance
    reaper_interval_seconds: float = 60.0
    client_retention_seconds: float = 3600.0

    # Address appended to X-Forwarded-For. When empty and a lookup URL is
    # configured, it is resolved once at startup.
    public_address: str = ""
    public_address_lookup_url: str = ""

    # HTTP client connection pool settings
    httpx_connect_timeout: float = 5.0
    httpx_pool_timeout: float = 5.0
    httpx_keepalive_expiry: float = 30.0
    httpx_max_connections: int = 200
    httpx_max_keepalive_connections: int = 40

    # Logging settings
    log_requests: bool = True
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @property
    def upstream_timeout_seconds(self) -> float:
        return self.proxy_request_timeout_ms / 1000

    @property
    def release_grace_seconds(self) -> float:
        return self.release_grace_ms / 1000

    @property
    def router_prefix(self) -> str:
        """Prefix in the form FastAPI's include_router expects ("" or "/x")."""
        return self.route_prefix.rstrip("/")

    @field_validator("route_prefix")
    @classmethod
    def normalize_route_prefix(cls, v: str) -> str:
        """Ensure the prefix starts and ends with a slash."""
        v = v.strip() or "/"
        if not v.startswith("/"):
            v = "/" + v
        if not v.endswith("/"):
            v = v + "/"
        return v

    @field_validator("whitelist_hostname_regex", "blacklist_hostname_regex")
    @classmethod
    def validate_regex(cls, v: str) -> str:
        """Validate hostname patterns compile."""
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid hostname pattern {v!r}: {e}") from e
        return v

    @field_validator("max_simultaneous_requests_per_ip", "max_request_length")
    @classmethod
    def validate_limits_positive(cls, v: int) -> int:
        """Validate limit values are positive."""
        if v < 1:
            raise ValueError("Limit values must be at least 1")
        return v

    @field_validator("increment_delay_ms", "release_grace_ms")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Delay values must not be negative")
        return v

    @field_validator(
        "proxy_request_timeout_ms",
        "reaper_interval_seconds",
        "client_retention_seconds",
        "httpx_connect_timeout",
        "httpx_pool_timeout",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
