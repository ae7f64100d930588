"""Exception hierarchy for the MCP debug agent."""

from typing import Optional


class MCPDebugError(Exception):
    """Base class for every error raised by mcp-debug."""

    def __init__(self, message: str, stage: Optional[str] = None):
        self.message = message
        self.stage = stage
        super().__init__(f"{stage}: {message}" if stage else message)

    def with_stage(self, stage: str) -> "MCPDebugError":
        """Tag the error with the lifecycle stage it escaped from."""
        if self.stage is None:
            self.stage = stage
            self.args = (f"{stage}: {self.message}",)
        return self


class ConfigError(MCPDebugError):
    """Invalid endpoint, transport or OAuth combination."""


class AuthError(MCPDebugError):
    """Base class for OAuth failures."""


class AuthTimeoutError(AuthError):
    """No authorization callback arrived before the timeout."""


class StateMismatchError(AuthError):
    """The callback's state does not match the one sent (possible CSRF)."""


class NonceMismatchError(AuthError):
    """The ID token's nonce does not match the one sent."""


class AuthServerError(AuthError):
    """The authorization server reported an error or misbehaved."""


class ReauthRequiredError(AuthError):
    """The token could not be refreshed; a new authorization is needed."""


class TransportError(MCPDebugError):
    """The connection to the MCP endpoint failed or was lost."""


class UnauthorizedError(MCPDebugError):
    """The MCP endpoint rejected the current credentials (HTTP 401)."""


class InsufficientScopeError(UnauthorizedError):
    """The token is valid but lacks scopes the operation needs (HTTP 403 insufficient_scope)."""

    def __init__(self, message: str, scopes: tuple[str, ...] = (), stage: Optional[str] = None):
        self.scopes = scopes
        super().__init__(message, stage=stage)


class ClientClosedError(MCPDebugError):
    """The agent client has been shut down."""


class RemoteError(MCPDebugError):
    """The MCP server answered a request with a JSON-RPC error."""

    def __init__(self, code: int, message: str, data=None, stage: Optional[str] = None):
        self.code = code
        self.data = data
        super().__init__(f"MCP error {code}: {message}", stage=stage)
