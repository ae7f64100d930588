import asyncio
import json
import time
from typing import Optional
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from aiohttp import web
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from mcp_debug.config import Endpoint, OAuthConfig
from mcp_debug.errors import (
    AuthServerError,
    AuthTimeoutError,
    NonceMismatchError,
    ReauthRequiredError,
    StateMismatchError,
)
from mcp_debug.oauth.browser import CallbackServer, validate_browser_url
from mcp_debug.oauth.client import OAuthClient
from mcp_debug.oauth.manager import OAuthManager
from mcp_debug.oauth.models import Token
from mcp_debug.oauth.pkce import generate_code_challenge
from tests.conftest import ENDPOINT, free_port, make_logger, output

AUTH_SERVER = "https://auth.example.com"
ID_TOKEN_KEY = "id-token-signing-key-for-tests-0123456789"


class AuthorizationServer:
    """Protected resource plus authorization server, served through httpx.MockTransport."""

    def __init__(self, registration: bool = True):
        self.registration = registration
        self.registered: Optional[dict] = None
        self.token_forms: list[dict[str, str]] = []
        self.authorization_url: Optional[str] = None
        self.refresh_status = 200
        # Token endpoint answers with an HTML error page instead of JSON
        self.malformed = False
        self.jwks_uri: Optional[str] = None
        self.signing_key = None
        # "echo" returns the nonce from the authorization request
        self.id_token_nonce: Optional[str] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)

        if url == "http://localhost:8090/.well-known/oauth-protected-resource/mcp":
            return httpx.Response(200, json={
                "resource": ENDPOINT,
                "authorization_servers": [AUTH_SERVER],
                "scopes_supported": ["mcp:read", "mcp:write"],
            })
        if url == f"{AUTH_SERVER}/.well-known/oauth-authorization-server":
            metadata = {
                "issuer": AUTH_SERVER,
                "authorization_endpoint": f"{AUTH_SERVER}/authorize",
                "token_endpoint": f"{AUTH_SERVER}/token",
                "code_challenge_methods_supported": ["S256"],
            }
            if self.registration:
                metadata["registration_endpoint"] = f"{AUTH_SERVER}/register"
            if self.jwks_uri:
                metadata["jwks_uri"] = self.jwks_uri
            return httpx.Response(200, json=metadata)
        if url == f"{AUTH_SERVER}/register":
            self.registered = json.loads(request.content)
            return httpx.Response(201, json={"client_id": "dynamic-client", "client_secret": "dynamic-secret"})
        if url == f"{AUTH_SERVER}/token":
            return self._token(request)
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.token_forms.append(form)
        if self.malformed:
            return httpx.Response(200, text="<html>gateway</html>", headers={"Content-Type": "text/html"})

        if form["grant_type"] == "refresh_token":
            if self.refresh_status != 200:
                return httpx.Response(self.refresh_status, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "access-2", "expires_in": 3600})

        body = {
            "access_token": "access-1",
            "token_type": "bearer",
            "refresh_token": "refresh-1",
            "expires_in": 3600,
            "scope": "mcp:read mcp:write",
        }
        if self.id_token_nonce is not None:
            nonce = self.auth_params()["nonce"] if self.id_token_nonce == "echo" else self.id_token_nonce
            body["id_token"] = self._id_token(nonce, form["client_id"])
        return httpx.Response(200, json=body)

    def _id_token(self, nonce: str, audience: str) -> str:
        if self.signing_key is None:
            return jwt.encode({"sub": "user", "nonce": nonce}, ID_TOKEN_KEY, algorithm="HS256")
        claims = {
            "sub": "user",
            "nonce": nonce,
            "aud": audience,
            "iss": AUTH_SERVER,
            "exp": int(time.time()) + 300,
        }
        return jwt.encode(claims, self.signing_key, algorithm="RS256", headers={"kid": "test-key"})

    def auth_params(self) -> dict[str, str]:
        return {k: v[0] for k, v in parse_qs(urlparse(self.authorization_url).query).items()}


class Browser:
    """Stands in for the user's browser and follows the redirect with a chosen outcome."""

    def __init__(self, server: AuthorizationServer, redirect_url: str, outcome: str = "approve"):
        self.server = server
        self.redirect_url = redirect_url
        self.outcome = outcome
        self.tasks: list[asyncio.Task] = []

    def __call__(self, url: str) -> bool:
        self.server.authorization_url = url
        if self.outcome != "ignore":
            self.tasks.append(asyncio.get_running_loop().create_task(self._redirect()))
        return True

    async def _redirect(self) -> None:
        params = self.server.auth_params()
        if self.outcome == "approve":
            query = {"code": "auth-code", "state": params["state"]}
        elif self.outcome == "wrong-state":
            query = {"code": "auth-code", "state": "forged"}
        else:
            query = {"error": "access_denied", "error_description": "user said no", "state": params["state"]}
        async with httpx.AsyncClient(trust_env=False) as client:
            await client.get(self.redirect_url, params=query)

    async def close(self) -> None:
        await asyncio.gather(*self.tasks, return_exceptions=True)


class Flow:
    def __init__(self, server: AuthorizationServer, outcome: str = "approve", **config):
        self.server = server
        redirect_url = f"http://127.0.0.1:{free_port()}/callback"
        self.browser = Browser(server, redirect_url, outcome)
        self.logger = make_logger()
        self.manager = OAuthManager(
            Endpoint(url=ENDPOINT),
            self.logger,
            oauth_client=OAuthClient(
                ENDPOINT,
                http_client=httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
            ),
            browser_opener=self.browser
        )
        self.config = OAuthConfig(enabled=True, redirect_url=redirect_url, **config)

    async def authorize(self) -> Token:
        return await self.manager.authorize(self.config)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.browser.close()
        await self.manager.close()


@pytest.mark.asyncio
async def test_dynamic_registration_then_pkce():
    """Without a client id: discover, register, authorize with PKCE, exchange the code"""
    server = AuthorizationServer()
    async with Flow(server) as flow:
        token = await flow.authorize()

    assert token.access_token == "access-1"
    assert token.refresh_token == "refresh-1"
    assert token.authorization_header == "Bearer access-1"
    assert flow.manager.token is token
    assert flow.manager.registration.client_id == "dynamic-client"

    assert server.registered["client_name"] == "mcp-debug"
    assert server.registered["redirect_uris"] == [flow.config.redirect_url]
    assert server.registered["grant_types"] == ["authorization_code", "refresh_token"]

    params = server.auth_params()
    assert params["client_id"] == "dynamic-client"
    assert params["redirect_uri"] == flow.config.redirect_url
    assert params["code_challenge_method"] == "S256"
    assert params["scope"] == "mcp:read mcp:write"
    assert params["resource"] == ENDPOINT

    form = server.token_forms[0]
    assert form["grant_type"] == "authorization_code"
    assert form["code"] == "auth-code"
    assert form["client_secret"] == "dynamic-secret"
    assert form["resource"] == ENDPOINT
    assert generate_code_challenge(form["code_verifier"]) == params["code_challenge"]
    assert "Authorization URL:" in output(flow.logger)


@pytest.mark.asyncio
async def test_configured_client_skips_registration():
    server = AuthorizationServer(registration=False)
    async with Flow(server, client_id="static-client", scopes="custom", use_pkce=False,
                    skip_resource_param=True) as flow:
        await flow.authorize()

    assert server.registered is None
    params = server.auth_params()
    assert params["client_id"] == "static-client"
    assert params["scope"] == "custom"
    assert "code_challenge" not in params
    assert "resource" not in params
    assert "code_verifier" not in server.token_forms[0]


@pytest.mark.asyncio
async def test_missing_registration_endpoint_is_an_error():
    async with Flow(AuthorizationServer(registration=False)) as flow:
        with pytest.raises(AuthServerError, match="dynamic client registration"):
            await flow.authorize()


@pytest.mark.asyncio
async def test_state_mismatch_is_rejected():
    server = AuthorizationServer()
    async with Flow(server, outcome="wrong-state") as flow:
        with pytest.raises(StateMismatchError):
            await flow.authorize()
    assert server.token_forms == []


@pytest.mark.asyncio
async def test_provider_error_is_reported():
    async with Flow(AuthorizationServer(), outcome="deny") as flow:
        with pytest.raises(AuthServerError, match="access_denied - user said no"):
            await flow.authorize()


@pytest.mark.asyncio
async def test_authorization_times_out():
    async with Flow(AuthorizationServer(), outcome="ignore", authorization_timeout=0.2) as flow:
        with pytest.raises(AuthTimeoutError, match="authorization timeout after 0.2s"):
            await flow.authorize()


@pytest.mark.asyncio
async def test_oidc_nonce_is_validated():
    server = AuthorizationServer()
    server.id_token_nonce = "echo"
    async with Flow(server, use_oidc=True) as flow:
        token = await flow.authorize()

    assert token.id_token
    assert server.auth_params()["scope"] == "openid mcp:read mcp:write"
    assert "OIDC nonce validated" in output(flow.logger)


@pytest.mark.asyncio
async def test_oidc_nonce_mismatch_is_rejected():
    server = AuthorizationServer()
    server.id_token_nonce = "not-the-nonce"
    async with Flow(server, use_oidc=True) as flow:
        with pytest.raises(NonceMismatchError):
            await flow.authorize()


@pytest.mark.asyncio
async def test_oidc_id_token_signature_is_verified(monkeypatch):
    """With a jwks_uri the ID token is verified against the published key"""
    for name in ("http_proxy", "HTTP_PROXY", "all_proxy", "ALL_PROXY"):
        monkeypatch.delenv(name, raising=False)

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    jwk = json.loads(RSAAlgorithm.to_jwk(key.public_key()))
    jwk.update(kid="test-key", use="sig", alg="RS256")

    async def jwks(request: web.Request) -> web.Response:
        return web.json_response({"keys": [jwk]})

    app = web.Application()
    app.router.add_get("/jwks", jwks)
    runner = web.AppRunner(app)
    await runner.setup()
    port = free_port()
    await web.TCPSite(runner, "127.0.0.1", port).start()

    server = AuthorizationServer()
    server.jwks_uri = f"http://127.0.0.1:{port}/jwks"
    server.signing_key = key
    server.id_token_nonce = "echo"
    try:
        async with Flow(server, use_oidc=True) as flow:
            await flow.authorize()
    finally:
        await runner.cleanup()

    assert "OIDC nonce validated" in output(flow.logger)
    assert "signature not verified" not in output(flow.logger)


@pytest.mark.asyncio
async def test_refresh_keeps_refresh_token():
    server = AuthorizationServer()
    async with Flow(server) as flow:
        first = await flow.authorize()
        second = await flow.manager.refresh()

    assert second.access_token == "access-2"
    assert second.refresh_token == first.refresh_token
    assert server.token_forms[-1]["grant_type"] == "refresh_token"
    assert server.token_forms[-1]["refresh_token"] == "refresh-1"
    assert flow.manager.token is second


@pytest.mark.asyncio
async def test_refresh_failure_requires_reauthorization():
    server = AuthorizationServer()
    server.refresh_status = 400
    async with Flow(server) as flow:
        await flow.authorize()
        with pytest.raises(ReauthRequiredError, match="invalid_grant"):
            await flow.manager.refresh()


@pytest.mark.asyncio
async def test_refresh_without_refresh_token():
    async with Flow(AuthorizationServer()) as flow:
        with pytest.raises(ReauthRequiredError):
            await flow.manager.refresh(Token(access_token="only-access"))


@pytest.mark.asyncio
async def test_malformed_refresh_response_requires_reauthorization():
    server = AuthorizationServer()
    async with Flow(server) as flow:
        first = await flow.authorize()
        server.malformed = True
        with pytest.raises(ReauthRequiredError, match="malformed response"):
            await flow.manager.refresh()
    assert flow.manager.token is first


@pytest.mark.asyncio
async def test_malformed_code_exchange_is_a_server_error():
    server = AuthorizationServer()
    server.malformed = True
    async with Flow(server) as flow:
        with pytest.raises(AuthServerError, match="failed to exchange authorization code: .*not JSON"):
            await flow.authorize()
    assert flow.manager.token is None


@pytest.mark.asyncio
async def test_step_up_requests_the_wider_scope_set():
    server = AuthorizationServer()
    async with Flow(server) as flow:
        await flow.authorize()
        assert server.auth_params()["scope"] == "mcp:read mcp:write"

        token = await flow.manager.step_up(["files:write", "mcp:read"])

    assert server.auth_params()["scope"] == "mcp:read mcp:write files:write"
    assert flow.manager.token is token
    assert "Requesting additional permissions" in output(flow.logger)


@pytest.mark.asyncio
async def test_step_up_before_authorization_fails():
    async with Flow(AuthorizationServer()) as flow:
        with pytest.raises(ReauthRequiredError, match="not completed an authorization"):
            await flow.manager.step_up(["files:write"])


@pytest.mark.asyncio
async def test_callback_pages():
    port = free_port()
    url = f"http://127.0.0.1:{port}/callback"
    callback = CallbackServer("127.0.0.1", port, "/callback", expected_state="s1")
    await callback.start()
    try:
        async with httpx.AsyncClient(trust_env=False) as client:
            first = await client.get(url, params={"code": "c1", "state": "s1"})
            second = await client.get(url, params={"code": "c2", "state": "s1"})
        assert await callback.wait(1) == "c1"
    finally:
        await callback.stop()
    assert first.status_code == 200
    assert second.status_code == 409

    callback = CallbackServer("127.0.0.1", port, "/callback", expected_state="s1")
    await callback.start()
    try:
        async with httpx.AsyncClient(trust_env=False) as client:
            forged = await client.get(url, params={"code": "c1", "state": "other"})
        with pytest.raises(StateMismatchError):
            await callback.wait(1)
    finally:
        await callback.stop()
    assert forged.status_code == 400


def test_token_expiry():
    assert not Token(access_token="a").is_expired
    assert Token.from_response({"access_token": "a", "expires_in": 0}).is_expired
    assert not Token.from_response({"access_token": "a", "expires_in": 3600}).is_expired
    with pytest.raises(AuthServerError):
        Token.from_response({"token_type": "bearer"})


@pytest.mark.parametrize("url", ["file:///etc/passwd", "javascript:alert(1)", "ftp://example.com"])
def test_browser_only_opens_http_urls(url):
    with pytest.raises(ValueError, match="only http/https"):
        validate_browser_url(url)
