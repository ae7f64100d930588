"""OAuth 2.1 client with discovery and Dynamic Client Registration support."""

import logging
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

import httpx

from mcp_debug.errors import AuthServerError
from mcp_debug.oauth.models import AuthServerMetadata, ClientRegistration
from mcp_debug.oauth.pkce import PKCE_METHOD_S256

logger = logging.getLogger(__name__)

PROTECTED_RESOURCE_PATH = "/.well-known/oauth-protected-resource"
AUTH_SERVER_PATH = "/.well-known/oauth-authorization-server"
OIDC_CONFIG_PATH = "/.well-known/openid-configuration"


def describe_http_error(error: httpx.HTTPStatusError) -> str:
    """Summarize an OAuth error response, preferring RFC 6749 error fields."""
    response = error.response
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("error"):
        description = body.get("error_description")
        detail = f"{body['error']}: {description}" if description else body["error"]
        return f"HTTP {response.status_code} ({detail})"
    return f"HTTP {response.status_code}"


class OAuthClient:
    """OAuth client for discovery, DCR, token exchange and refresh."""

    def __init__(
        self,
        server_url: str,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize OAuth client.

        Args:
            server_url: MCP endpoint URL (e.g., http://localhost:8090/mcp)
            timeout: HTTP request timeout in seconds
            http_client: Pre-configured client, mainly for tests
        """
        self.server_url = server_url.rstrip('/')
        self.client = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        """Close HTTP client."""
        await self.client.aclose()

    async def _get_json(self, url: str) -> Optional[dict[str, Any]]:
        """GET a metadata document; None when the server does not publish it."""
        try:
            response = await self.client.get(url)
        except httpx.HTTPError as e:
            logger.debug("Metadata request to %s failed: %s", url, e)
            return None
        if response.status_code in (404, 405):
            return None
        response.raise_for_status()
        return response.json()

    async def discover_protected_resource(self) -> Optional[dict[str, Any]]:
        """
        Fetch RFC 9728 Protected Resource Metadata for the endpoint.

        Tries the path-specific well-known URL first, then the root one.

        Returns:
            Metadata with an ``authorization_servers`` array, or None when the
            server does not publish any
        """
        parsed = urlparse(self.server_url)
        candidates = []
        if parsed.path and parsed.path != "/":
            candidates.append(urlunparse((
                parsed.scheme, parsed.netloc,
                PROTECTED_RESOURCE_PATH + parsed.path, '', '', ''
            )))
        candidates.append(urlunparse((parsed.scheme, parsed.netloc, PROTECTED_RESOURCE_PATH, '', '', '')))

        for url in candidates:
            metadata = await self._get_json(url)
            if metadata is not None:
                return metadata
        return None

    async def discover_oauth_metadata(self, issuer: str) -> AuthServerMetadata:
        """
        Discover OAuth authorization server metadata.

        Probes RFC 8414 and OpenID Connect discovery locations, with and
        without the issuer's path component.

        Args:
            issuer: Authorization server URL

        Returns:
            Parsed authorization server metadata

        Raises:
            ValueError: If no metadata document is found
            httpx.HTTPError: If a discovery request fails
        """
        parsed = urlparse(issuer.rstrip('/'))
        path = parsed.path if parsed.path != "/" else ""

        def at(well_known: str) -> str:
            return urlunparse((parsed.scheme, parsed.netloc, well_known + path, '', '', ''))

        candidates = [at(AUTH_SERVER_PATH), at(OIDC_CONFIG_PATH)]
        if path:
            candidates.append(f"{issuer.rstrip('/')}{OIDC_CONFIG_PATH}")

        for url in candidates:
            metadata = await self._get_json(url)
            if metadata is not None:
                logger.debug("Found authorization server metadata at %s", url)
                return AuthServerMetadata.model_validate(metadata)

        raise ValueError(f"No OAuth authorization server metadata found for {issuer}")

    async def register_client(
        self,
        registration_endpoint: str,
        client_name: str,
        redirect_uri: str,
        scopes: Optional[list[str]] = None,
        registration_token: Optional[str] = None
    ) -> ClientRegistration:
        """
        Perform Dynamic Client Registration (RFC 7591).

        Args:
            registration_endpoint: Registration endpoint from metadata
            client_name: Human-readable client name
            redirect_uri: OAuth callback URI
            scopes: Scopes the client intends to request
            registration_token: Initial access token for servers that
                protect their registration endpoint

        Returns:
            Registration with client_id and, if issued, client_secret

        Raises:
            httpx.HTTPError: If registration fails
        """
        request_body: dict[str, Any] = {
            "client_name": client_name,
            "redirect_uris": [redirect_uri],
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "client_secret_post"
        }
        if scopes:
            request_body["scope"] = " ".join(scopes)

        headers = {}
        if registration_token:
            headers["Authorization"] = f"Bearer {registration_token}"

        response = await self.client.post(registration_endpoint, json=request_body, headers=headers)
        response.raise_for_status()
        return ClientRegistration.model_validate(response.json())

    def build_authorization_url(
        self,
        authorization_endpoint: str,
        client_id: str,
        redirect_uri: str,
        state: str,
        code_challenge: Optional[str] = None,
        scopes: Optional[list[str]] = None,
        resource: Optional[str] = None,
        nonce: Optional[str] = None
    ) -> str:
        """
        Build OAuth authorization URL.

        Args:
            authorization_endpoint: Authorization endpoint from metadata
            client_id: Client ID
            redirect_uri: OAuth callback URI
            state: Random state for CSRF protection
            code_challenge: PKCE code challenge (S256), omitted when PKCE is off
            scopes: Scopes to request; the parameter is omitted when empty
            resource: RFC 8707 target resource
            nonce: OIDC nonce

        Returns:
            Complete authorization URL to open in browser
        """
        params = {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "state": state
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = PKCE_METHOD_S256
        if scopes:
            params["scope"] = " ".join(scopes)
        if resource:
            params["resource"] = resource
        if nonce:
            params["nonce"] = nonce

        url = httpx.URL(authorization_endpoint, params=params)
        return str(url)

    async def _token_request(self, token_endpoint: str, data: dict[str, Any]) -> dict[str, Any]:
        response = await self.client.post(
            token_endpoint,
            data={k: v for k, v in data.items() if v},
            headers={"Content-Type": "application/x-www-form-urlencoded"}
        )
        response.raise_for_status()
        try:
            body = response.json()
        except ValueError as e:
            raise AuthServerError(
                f"token endpoint returned a malformed response (HTTP {response.status_code}, not JSON)"
            ) from e
        if not isinstance(body, dict):
            raise AuthServerError("token endpoint returned a malformed response (expected a JSON object)")
        return body

    async def exchange_code_for_token(
        self,
        token_endpoint: str,
        code: str,
        registration: ClientRegistration,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
        resource: Optional[str] = None
    ) -> dict[str, Any]:
        """
        Exchange authorization code for access token.

        Args:
            token_endpoint: Token endpoint from metadata
            code: Authorization code from callback
            registration: Client credentials
            redirect_uri: Same redirect URI used in authorization request
            code_verifier: PKCE code verifier
            resource: RFC 8707 target resource

        Returns:
            Token response with access_token, token_type, expires_in, etc.

        Raises:
            httpx.HTTPError: If token exchange fails
            AuthServerError: If the response body is not a JSON object
        """
        return await self._token_request(token_endpoint, {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": registration.client_id,
            "client_secret": registration.client_secret,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
            "resource": resource
        })

    async def refresh_token(
        self,
        token_endpoint: str,
        refresh_token: str,
        registration: ClientRegistration,
        resource: Optional[str] = None
    ) -> dict[str, Any]:
        """
        Exchange a refresh token for a new access token.

        Raises:
            httpx.HTTPError: If the refresh request fails
            AuthServerError: If the response body is not a JSON object
        """
        return await self._token_request(token_endpoint, {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": registration.client_id,
            "client_secret": registration.client_secret,
            "resource": resource
        })
