"""Pydantic models for OAuth tokens and server metadata."""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from mcp_debug.errors import AuthServerError

# Treat tokens as expired slightly early so a request never races the expiry
EXPIRY_LEEWAY = timedelta(seconds=30)


class Token(BaseModel):
    """OAuth token held in memory for the lifetime of the process."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "Bearer"
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    id_token: Optional[str] = None
    scope: Optional[str] = None

    @classmethod
    def from_response(cls, data: dict[str, Any], previous: Optional["Token"] = None) -> "Token":
        """
        Build a token from a token endpoint response.

        Args:
            data: Parsed JSON body of the token response
            previous: Token being refreshed; its refresh token is kept when
                the server does not rotate it

        Raises:
            AuthServerError: If the response carries no access token
        """
        access_token = data.get("access_token")
        if not access_token:
            raise AuthServerError("token response did not include an access_token")

        expires_at = None
        expires_in = data.get("expires_in")
        if expires_in is not None:
            try:
                expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
            except (TypeError, ValueError):
                expires_at = None

        refresh_token = data.get("refresh_token")
        if refresh_token is None and previous is not None:
            refresh_token = previous.refresh_token

        return cls(
            access_token=access_token,
            token_type=data.get("token_type") or "Bearer",
            refresh_token=refresh_token,
            expires_at=expires_at,
            id_token=data.get("id_token"),
            scope=data.get("scope")
        )

    @property
    def is_expired(self) -> bool:
        if not self.expires_at:
            return False
        return datetime.now(timezone.utc) >= self.expires_at - EXPIRY_LEEWAY

    @property
    def authorization_header(self) -> str:
        # Servers commonly answer "bearer"; the header scheme is always Bearer
        return f"Bearer {self.access_token}"


class ClientRegistration(BaseModel):
    """Client credentials obtained from configuration or Dynamic Client Registration."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    client_secret: Optional[str] = None
    registration_access_token: Optional[str] = None
    registration_client_uri: Optional[str] = None


class AuthServerMetadata(BaseModel):
    """Subset of RFC 8414 authorization server metadata used by the agent."""

    model_config = ConfigDict(frozen=True, extra="allow")

    issuer: Optional[str] = None
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: Optional[str] = None
    jwks_uri: Optional[str] = None
    scopes_supported: Optional[list[str]] = None
    code_challenge_methods_supported: Optional[list[str]] = None
