"""Manages OAuth authorization, token storage and refresh for one MCP endpoint."""

import asyncio
import secrets
from typing import Any, Callable, Optional, Sequence
from urllib.parse import urlparse

import httpx
import jwt

from mcp_debug.config import LOOPBACK_HOSTS, Endpoint, OAuthConfig
from mcp_debug.errors import (
    AuthError,
    AuthServerError,
    NonceMismatchError,
    ReauthRequiredError,
)
from mcp_debug.logger import Logger
from mcp_debug.oauth.browser import CallbackServer, open_browser
from mcp_debug.oauth.client import OAuthClient, describe_http_error
from mcp_debug.oauth.models import AuthServerMetadata, ClientRegistration, Token
from mcp_debug.oauth.pkce import generate_nonce, generate_pkce_pair, generate_state

ID_TOKEN_ALGORITHMS = ["RS256", "RS384", "RS512", "ES256", "ES384", "PS256"]


class OAuthManager:
    """
    Performs the Authorization Code flow (with PKCE and optional OIDC) and
    owns the resulting token.

    The token lives in memory only and is replaced as a whole on refresh, so
    readers always see either the old or the new token.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        logger: Logger,
        oauth_client: Optional[OAuthClient] = None,
        browser_opener: Callable[[str], bool] = open_browser
    ):
        self.endpoint = endpoint
        self.logger = logger
        self.oauth_client = oauth_client or OAuthClient(endpoint.url)
        self._open_browser = browser_opener
        self._lock = asyncio.Lock()
        self._token: Optional[Token] = None
        self._config: Optional[OAuthConfig] = None
        self._metadata: Optional[AuthServerMetadata] = None
        self._resource_metadata: Optional[dict[str, Any]] = None
        self._registration: Optional[ClientRegistration] = None
        self._requested_scopes: list[str] = []

    @property
    def token(self) -> Optional[Token]:
        return self._token

    @property
    def registration(self) -> Optional[ClientRegistration]:
        return self._registration

    async def close(self) -> None:
        await self.oauth_client.close()

    async def authorize(self, config: OAuthConfig) -> Token:
        """
        Run the full authorization flow and store the resulting token.

        Args:
            config: Validated OAuth configuration

        Returns:
            The new token

        Raises:
            AuthTimeoutError: If the user does not complete authorization in time
            StateMismatchError: If the callback state does not match
            NonceMismatchError: If OIDC nonce validation fails
            AuthServerError: If discovery, registration or token exchange fails
        """
        config.check()
        async with self._lock:
            self._config = config
            token = await self._authorize(config)
            self._token = token
            return token

    async def refresh(self, token: Optional[Token] = None) -> Token:
        """
        Exchange the refresh token for a new access token.

        Raises:
            ReauthRequiredError: If there is no refresh token or the server
                rejects it; the caller should run :meth:`authorize` again
        """
        token = token or self._token
        if token is None or not token.refresh_token:
            raise ReauthRequiredError("no refresh token available")
        if self._metadata is None or self._registration is None:
            raise ReauthRequiredError("client has not completed an authorization yet")

        async with self._lock:
            self.logger.info("Refreshing OAuth access token...")
            try:
                data = await self.oauth_client.refresh_token(
                    self._metadata.token_endpoint,
                    token.refresh_token,
                    self._registration,
                    resource=self._resource(self._config)
                )
                new_token = Token.from_response(data, previous=token)
            except httpx.HTTPStatusError as e:
                raise ReauthRequiredError(f"token refresh failed: {describe_http_error(e)}") from e
            except httpx.HTTPError as e:
                raise ReauthRequiredError(f"token refresh failed: {e}") from e
            except AuthServerError as e:
                raise ReauthRequiredError(f"token refresh failed: {e.message}") from e
            self._token = new_token

        self.logger.success("OAuth token refreshed")
        return new_token

    async def step_up(self, scopes: Sequence[str]) -> Token:
        """
        Authorize again, asking for the scopes a resource server demanded.

        The new request keeps every scope requested so far and adds
        ``scopes``; later authorizations keep the wider set.

        Raises:
            ReauthRequiredError: If no authorization has completed yet
            AuthError: Anything :meth:`authorize` raises
        """
        if self._config is None:
            raise ReauthRequiredError("client has not completed an authorization yet")
        merged = merge_scopes(self._requested_scopes, scopes)
        self.logger.info(f"Requesting additional permissions: {' '.join(merged)}")
        return await self.authorize(self._config.model_copy(update={"scopes": tuple(merged)}))

    async def _authorize(self, config: OAuthConfig) -> Token:
        if config.client_secret and config.secret_from_argument:
            self.logger.warning(
                "Security Warning: Client secret passed via command-line argument is visible in process listings"
            )
            self.logger.info('Consider using an environment variable instead: export OAUTH_CLIENT_SECRET="..."')

        metadata = await self._discover()
        registration = await self._ensure_registration(config, metadata)

        scopes = self._select_scopes(config)
        self._requested_scopes = list(scopes)
        resource = self._resource(config)
        state = generate_state()

        code_verifier = code_challenge = None
        if config.use_pkce:
            code_verifier, code_challenge = generate_pkce_pair()
        else:
            self.logger.warning("PKCE disabled - authorization codes are not bound to this client")

        nonce = None
        if config.use_oidc:
            nonce = generate_nonce()
            if "openid" not in scopes:
                scopes = ["openid", *scopes]
            self.logger.info("OIDC mode enabled - ID token nonce will be validated")

        auth_url = self.oauth_client.build_authorization_url(
            authorization_endpoint=metadata.authorization_endpoint,
            client_id=registration.client_id,
            redirect_uri=config.redirect_url,
            state=state,
            code_challenge=code_challenge,
            scopes=scopes,
            resource=resource,
            nonce=nonce
        )

        code = await self._wait_for_code(config, state, auth_url)

        self.logger.success("Authorization code received")
        self.logger.info("Exchanging code for access token...")
        try:
            data = await self.oauth_client.exchange_code_for_token(
                token_endpoint=metadata.token_endpoint,
                code=code,
                registration=registration,
                redirect_uri=config.redirect_url,
                code_verifier=code_verifier,
                resource=resource
            )
        except httpx.HTTPStatusError as e:
            raise AuthServerError(f"failed to exchange authorization code: {describe_http_error(e)}") from e
        except httpx.HTTPError as e:
            raise AuthServerError(f"failed to exchange authorization code: {e}") from e
        except AuthServerError as e:
            raise AuthServerError(f"failed to exchange authorization code: {e.message}") from e

        token = Token.from_response(data)

        if nonce is not None:
            await self._validate_id_token(token, nonce, metadata, registration)

        self.logger.success("Access token obtained successfully!")
        if scopes:
            self.logger.info(f"Requested scopes: {' '.join(scopes)}")
        if token.scope:
            self.logger.info(f"Granted scopes: {token.scope}")
        return token

    async def _wait_for_code(self, config: OAuthConfig, state: str, auth_url: str) -> str:
        callback = CallbackServer(
            host=config.redirect_host,
            port=config.redirect_port,
            path=config.redirect_path,
            expected_state=state
        )
        try:
            await callback.start()
        except OSError as e:
            raise AuthError(
                f"failed to start callback server on {config.redirect_host}:{config.redirect_port}: {e}"
            ) from e

        try:
            self.logger.info("Opening browser for authorization...")
            self.logger.info(f"Authorization URL: {auth_url}")
            try:
                opened = self._open_browser(auth_url)
            except ValueError as e:
                self.logger.warning(str(e))
                opened = False
            if not opened:
                self.logger.warning("Could not open browser automatically - please open the URL above")

            self.logger.info("Waiting for authorization...")
            return await callback.wait(config.authorization_timeout)
        finally:
            await callback.stop()

    async def _discover(self) -> AuthServerMetadata:
        if self._metadata is not None:
            return self._metadata

        self.logger.info("Discovering OAuth authorization server...")
        try:
            self._resource_metadata = await self.oauth_client.discover_protected_resource()
            issuer = self.endpoint.base_url
            servers = (self._resource_metadata or {}).get("authorization_servers") or []
            if servers:
                issuer = servers[0]
                self.logger.info(f"Authorization server: {issuer}")
            else:
                self.logger.info("No protected resource metadata - using the endpoint host as authorization server")
            self._metadata = await self.oauth_client.discover_oauth_metadata(issuer)
        except (httpx.HTTPError, ValueError) as e:
            raise AuthServerError(f"OAuth discovery failed: {e}") from e

        return self._metadata

    async def _ensure_registration(self, config: OAuthConfig, metadata: AuthServerMetadata) -> ClientRegistration:
        if config.client_id:
            self._registration = ClientRegistration(
                client_id=config.client_id,
                client_secret=config.client_secret or None
            )
            return self._registration

        if self._registration is not None:
            return self._registration

        if not metadata.registration_endpoint:
            raise AuthServerError(
                "server does not support dynamic client registration - provide --oauth-client-id"
            )

        self.logger.info("No client ID configured, attempting dynamic client registration...")

        registration_token = config.registration_token or None
        if registration_token and not _is_secure(metadata.registration_endpoint):
            self.logger.warning("Registration access token withheld: registration endpoint is not HTTPS")
            registration_token = None

        try:
            self._registration = await self.oauth_client.register_client(
                registration_endpoint=metadata.registration_endpoint,
                client_name=config.client_name,
                redirect_uri=config.redirect_url,
                scopes=self._select_scopes(config),
                registration_token=registration_token
            )
        except httpx.HTTPStatusError as e:
            self.logger.info("You may need to register a client manually and provide --oauth-client-id")
            raise AuthServerError(f"client registration failed: {describe_http_error(e)}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise AuthServerError(f"client registration failed: {e}") from e

        self.logger.success(f"Client registered successfully with ID: {self._registration.client_id}")
        return self._registration

    def _select_scopes(self, config: OAuthConfig) -> list[str]:
        # Configured scopes win, then what the resource advertises, else no scope parameter
        if config.scopes:
            return list(config.scopes)
        supported = (self._resource_metadata or {}).get("scopes_supported") or []
        return [scope for scope in supported if isinstance(scope, str)]

    def _resource(self, config: Optional[OAuthConfig]) -> Optional[str]:
        if config is None or config.skip_resource_param:
            return None
        return config.resource_uri or self.endpoint.resource_uri()

    async def _validate_id_token(
        self,
        token: Token,
        nonce: str,
        metadata: AuthServerMetadata,
        registration: ClientRegistration
    ) -> None:
        if not token.id_token:
            raise NonceMismatchError("OIDC enabled but the token response has no id_token")

        try:
            if metadata.jwks_uri:
                claims = await asyncio.to_thread(
                    _decode_verified,
                    token.id_token,
                    metadata.jwks_uri,
                    registration.client_id,
                    metadata.issuer
                )
            else:
                self.logger.warning("Server publishes no jwks_uri - ID token signature not verified")
                claims = jwt.decode(token.id_token, options={"verify_signature": False})
        except jwt.PyJWTError as e:
            raise AuthServerError(f"invalid ID token: {e}") from e

        if not secrets.compare_digest(str(claims.get("nonce", "")), nonce):
            raise NonceMismatchError("ID token nonce does not match the authorization request")
        self.logger.success("OIDC nonce validated")


def merge_scopes(*groups: Sequence[str]) -> list[str]:
    """Union of scope lists, first occurrence order kept."""
    merged: dict[str, None] = {}
    for group in groups:
        for scope in group:
            merged.setdefault(scope, None)
    return list(merged)


def _decode_verified(id_token: str, jwks_uri: str, audience: str, issuer: Optional[str]) -> dict[str, Any]:
    signing_key = jwt.PyJWKClient(jwks_uri).get_signing_key_from_jwt(id_token)
    return jwt.decode(
        id_token,
        signing_key.key,
        algorithms=ID_TOKEN_ALGORITHMS,
        audience=audience,
        issuer=issuer
    )


def _is_secure(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme == "https" or parsed.hostname in LOOPBACK_HOSTS
