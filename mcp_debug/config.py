"""Configuration for the MCP debug agent.

Process defaults come from the environment (or a ``.env`` file) through
:class:`Settings`. The command layer turns them into one immutable
:class:`AgentConfig`, which is validated once and passed explicitly into the
agent client.
"""

import shlex
from functools import lru_cache
from typing import Any
from urllib.parse import urlparse, urlunparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_debug.errors import ConfigError

TRANSPORT_STREAMABLE_HTTP = "streamable-http"
TRANSPORT_STDIO = "stdio"

CLIENT_TRANSPORTS = (TRANSPORT_STREAMABLE_HTTP, TRANSPORT_STDIO)
SERVER_TRANSPORTS = (TRANSPORT_STDIO, TRANSPORT_STREAMABLE_HTTP)

# Path suffix the URL-based transport requires.
REQUIRED_SUFFIX = {
    TRANSPORT_STREAMABLE_HTTP: "/mcp",
}

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}

DEFAULT_ENDPOINT = "http://localhost:8090/mcp"
DEFAULT_REDIRECT_URL = "http://localhost:8765/callback"
DEFAULT_LISTEN_ADDR = ":8899"
DEFAULT_AUTH_TIMEOUT = 300.0
DEFAULT_STEP_UP_RETRIES = 2
DEFAULT_TIMEOUT = 300.0


class Settings(BaseSettings):
    """Environment-backed defaults for every command-line flag."""

    MCP_DEBUG_ENDPOINT: str = DEFAULT_ENDPOINT
    MCP_DEBUG_TRANSPORT: str = TRANSPORT_STREAMABLE_HTTP
    MCP_DEBUG_SERVER_TRANSPORT: str = TRANSPORT_STDIO
    MCP_DEBUG_LISTEN_ADDR: str = DEFAULT_LISTEN_ADDR
    MCP_DEBUG_TIMEOUT: float = DEFAULT_TIMEOUT
    MCP_DEBUG_VERBOSE: bool = False
    MCP_DEBUG_NO_COLOR: bool = False
    MCP_DEBUG_JSON_RPC: bool = False

    OAUTH_CLIENT_ID: str = ""
    OAUTH_CLIENT_SECRET: str = ""  # Preferred over --oauth-client-secret
    OAUTH_REGISTRATION_TOKEN: str = ""
    OAUTH_REDIRECT_URL: str = DEFAULT_REDIRECT_URL

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    return Settings()


class Endpoint(BaseModel):
    """Remote MCP endpoint: a URL (or, for stdio, a command line) and its transport."""

    model_config = ConfigDict(frozen=True)

    url: str
    transport: str = TRANSPORT_STREAMABLE_HTTP

    def check(self) -> None:
        """
        Validate the endpoint/transport pair.

        Raises:
            ConfigError: If the transport is unknown, the URL is malformed or
                its path does not end with the suffix the transport requires.
        """
        if self.transport not in CLIENT_TRANSPORTS:
            raise ConfigError(
                f"unsupported transport '{self.transport}' "
                f"(expected one of: {', '.join(CLIENT_TRANSPORTS)})"
            )

        if self.transport == TRANSPORT_STDIO:
            if not self.command:
                raise ConfigError("stdio transport requires a command to launch")
            return

        parsed = urlparse(self.url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ConfigError(f"endpoint '{self.url}' is not a valid http(s) URL")

        suffix = REQUIRED_SUFFIX[self.transport]
        if not parsed.path.rstrip("/").endswith(suffix):
            raise ConfigError(
                f"endpoint '{self.url}' must end with {suffix} for {self.transport} transport"
            )

    @property
    def is_http(self) -> bool:
        return self.transport != TRANSPORT_STDIO

    @property
    def command(self) -> list[str]:
        """Child process argv for the stdio transport."""
        try:
            return shlex.split(self.url)
        except ValueError:
            return []

    @property
    def base_url(self) -> str:
        """Scheme and authority of the endpoint, without any path."""
        parsed = urlparse(self.url)
        return urlunparse((parsed.scheme, parsed.netloc, "", "", "", ""))

    def resource_uri(self) -> str:
        """Canonical resource identifier for RFC 8707 audience binding."""
        parsed = urlparse(self.url)
        return urlunparse((
            parsed.scheme.lower(),
            parsed.netloc.lower(),
            parsed.path.rstrip("/"),
            "", "", ""
        ))


class OAuthConfig(BaseModel):
    """OAuth 2.1 settings for authenticating against a protected MCP endpoint."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    client_id: str = ""
    client_secret: str = ""
    scopes: tuple[str, ...] = ()
    redirect_url: str = DEFAULT_REDIRECT_URL
    use_pkce: bool = True
    authorization_timeout: float = DEFAULT_AUTH_TIMEOUT
    use_oidc: bool = False
    # Re-authorize with the scopes named in a 403 insufficient_scope challenge
    step_up: bool = True
    step_up_max_retries: int = DEFAULT_STEP_UP_RETRIES

    registration_token: str = ""
    resource_uri: str = ""
    skip_resource_param: bool = False
    client_name: str = "mcp-debug"
    # True when the secret came from a command-line argument (visible in `ps`)
    secret_from_argument: bool = False

    @field_validator("scopes", mode="before")
    @classmethod
    def _dedupe_scopes(cls, value: Any) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            value = value.replace(",", " ").split()
        ordered: dict[str, None] = {}
        for scope in value:
            scope = scope.strip()
            if scope:
                ordered.setdefault(scope, None)
        return tuple(ordered)

    def check(self) -> None:
        """
        Validate the configuration before any network call.

        Raises:
            ConfigError: If OAuth is enabled with an unusable redirect URL, a
                non-positive authorization timeout or negative step-up retries.
        """
        if not self.enabled:
            return

        if not self.redirect_url:
            raise ConfigError("OAuth redirect URL is required")

        parsed = urlparse(self.redirect_url)
        host = parsed.hostname
        if parsed.scheme not in ("http", "https") or not host:
            raise ConfigError(f"OAuth redirect URL '{self.redirect_url}' is not a valid URL")
        if parsed.scheme == "http" and host not in LOOPBACK_HOSTS:
            raise ConfigError(
                f"OAuth redirect URL '{self.redirect_url}' must use https or a loopback host"
            )
        try:
            parsed.port
        except ValueError as e:
            raise ConfigError(f"OAuth redirect URL has an invalid port: {e}") from e

        if self.authorization_timeout <= 0:
            raise ConfigError("OAuth authorization timeout must be positive")
        if self.step_up_max_retries < 0:
            raise ConfigError("OAuth step-up retries cannot be negative")

    @property
    def redirect_host(self) -> str:
        return urlparse(self.redirect_url).hostname or "localhost"

    @property
    def redirect_port(self) -> int:
        parsed = urlparse(self.redirect_url)
        if parsed.port:
            return parsed.port
        return 443 if parsed.scheme == "https" else 80

    @property
    def redirect_path(self) -> str:
        return urlparse(self.redirect_url).path or "/"


class AgentConfig(BaseModel):
    """Everything the agent client needs, built once at startup."""

    model_config = ConfigDict(frozen=True)

    endpoint: Endpoint
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    verbose: bool = False
    json_rpc: bool = False
    client_name: str = "mcp-debug-agent"
    version: str = "1.0.0"

    def check(self) -> None:
        """Validate the endpoint and OAuth settings together."""
        self.endpoint.check()
        self.oauth.check()
        if self.oauth.enabled and not self.endpoint.is_http:
            raise ConfigError("OAuth is only supported for HTTP transports, not stdio")
