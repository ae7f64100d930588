import asyncio
import io
import json
import socket
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional, Union

import pytest
import uvicorn
from mcp.server.fastmcp import FastMCP
from rich.console import Console

from mcp_debug.client.notifications import Notification
from mcp_debug.client.session import Subscription
from mcp_debug.config import AgentConfig, Endpoint, OAuthConfig
from mcp_debug.errors import InsufficientScopeError, ReauthRequiredError, UnauthorizedError
from mcp_debug.logger import Logger
from mcp_debug.oauth.models import Token

ENDPOINT = "http://localhost:8090/mcp"

CALCULATE_TOOL = {
    "name": "calculate",
    "description": "Perform basic arithmetic",
    "inputSchema": {
        "type": "object",
        "properties": {
            "operation": {"type": "string"},
            "x": {"type": "number"},
            "y": {"type": "number"},
        },
        "required": ["operation", "x", "y"],
    },
}

ECHO_TOOL = {"name": "echo", "description": "Echo text back", "inputSchema": {"type": "object"}}

README_RESOURCE = {"uri": "docs://readme", "name": "readme", "mimeType": "text/markdown"}

GREETING_PROMPT = {
    "name": "greeting",
    "description": "Greet someone",
    "arguments": [{"name": "name", "description": "Who to greet", "required": True}],
}


def make_logger(verbose: bool = False, json_rpc: bool = False) -> Logger:
    console = Console(file=io.StringIO(), no_color=True, width=200, force_terminal=False)
    return Logger(verbose=verbose, color=False, json_rpc=json_rpc, console=console)


def output(logger: Logger) -> str:
    return logger.console.file.getvalue()


def make_config(oauth: bool = False) -> AgentConfig:
    return AgentConfig(
        endpoint=Endpoint(url=ENDPOINT),
        oauth=OAuthConfig(enabled=oauth)
    )


Handler = Union[dict[str, Any], Callable[[Optional[dict[str, Any]]], dict[str, Any]]]


class FakeSession:
    """In-memory stand-in for TransportSession."""

    def __init__(self, capabilities: Optional[dict[str, Any]] = None):
        self.server_capabilities = capabilities if capabilities is not None else {
            "tools": {"listChanged": True},
            "resources": {},
            "prompts": {},
        }
        self.server_info = {"name": "fake-server", "version": "0.1.0"}
        self.token: Optional[Token] = None
        self.alive = False
        self.connects = 0
        self.reconnects = 0
        self.connect_unauthorized = 0
        self.unauthorized = 0
        # Scope sets to demand, one 403 per entry
        self.insufficient_scope: list[tuple[str, ...]] = []
        self.calls: list[tuple[str, Optional[dict[str, Any]]]] = []
        self.closed = False
        self.handlers: dict[str, Handler] = {
            "tools/list": {"tools": [CALCULATE_TOOL]},
            "resources/list": {"resources": [README_RESOURCE]},
            "prompts/list": {"prompts": [GREETING_PROMPT]},
            "tools/call": {"content": [{"type": "text", "text": "8"}], "isError": False},
            "resources/read": {"contents": [{"uri": "docs://readme", "text": "# Readme"}]},
            "prompts/get": {"messages": [{"role": "user", "content": {"type": "text", "text": "Hello"}}]},
            "ping": {},
        }
        self._subscribers: set[Subscription] = set()

    async def connect(self, token: Optional[Token] = None) -> dict[str, Any]:
        self.connects += 1
        if self.connect_unauthorized:
            self.connect_unauthorized -= 1
            raise UnauthorizedError("server rejected the connection (HTTP 401)")
        self.token = token
        self.alive = True
        return {"serverInfo": self.server_info, "capabilities": self.server_capabilities}

    async def reconnect(self, token: Optional[Token] = None) -> dict[str, Any]:
        self.reconnects += 1
        self.alive = False
        return await self.connect(token)

    async def call(self, method: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        self.calls.append((method, params))
        if self.unauthorized:
            self.unauthorized -= 1
            raise UnauthorizedError(f"{method} rejected (HTTP 401)")
        if self.insufficient_scope:
            scopes = self.insufficient_scope.pop(0)
            raise InsufficientScopeError(f"{method} rejected (HTTP 403)", scopes)
        handler = self.handlers[method]
        return handler(params) if callable(handler) else handler

    def calls_to(self, method: str) -> list[Optional[dict[str, Any]]]:
        return [params for name, params in self.calls if name == method]

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        if self.closed:
            subscription.end()
        else:
            self._subscribers.add(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    def publish(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        notification = Notification.from_method(method, params)
        for subscription in list(self._subscribers):
            subscription.publish(notification)

    async def close(self) -> None:
        self.closed = True
        self.alive = False
        for subscription in list(self._subscribers):
            subscription.end()
        self._subscribers.clear()


class FakeOAuth:
    """Stand-in for OAuthManager that hands out numbered tokens."""

    def __init__(self, refresh_fails: bool = False):
        self.refresh_fails = refresh_fails
        self.authorizations = 0
        self.refreshes = 0
        self.step_ups: list[tuple[str, ...]] = []
        self.closed = False
        self.token: Optional[Token] = None

    async def authorize(self, config: OAuthConfig) -> Token:
        self.authorizations += 1
        self.token = Token(access_token=f"auth-{self.authorizations}", refresh_token="refresh")
        return self.token

    async def refresh(self, token: Optional[Token] = None) -> Token:
        self.refreshes += 1
        if self.refresh_fails:
            raise ReauthRequiredError("token refresh failed: HTTP 400 (invalid_grant)")
        self.token = Token(access_token=f"refreshed-{self.refreshes}", refresh_token="refresh")
        return self.token

    async def step_up(self, scopes) -> Token:
        self.step_ups.append(tuple(scopes))
        self.token = Token(access_token=f"stepped-{len(self.step_ups)}", refresh_token="refresh")
        return self.token

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def logger() -> Logger:
    return make_logger()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def no_proxy(monkeypatch):
    for name in ("http_proxy", "HTTP_PROXY", "https_proxy", "HTTPS_PROXY", "all_proxy", "ALL_PROXY"):
        monkeypatch.delenv(name, raising=False)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class GuardedApp:
    """
    ASGI wrapper around an MCP app that checks bearer tokens like a resource server.

    ``tokens`` maps each accepted access token to the scopes it carries.
    Unknown tokens get 401; tokens missing a scope in ``required`` get 403
    with an ``insufficient_scope`` challenge.
    """

    def __init__(self, app, tokens: dict[str, set[str]]):
        self.app = app
        self.tokens = tokens
        self.required: tuple[str, ...] = ()
        self.rejected: list[int] = []
        self.url = ""

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            header = dict(scope["headers"]).get(b"authorization", b"").decode()
            token = header.removeprefix("Bearer ")
            if token not in self.tokens:
                await self._reject(send, 401, 'Bearer error="invalid_token"')
                return
            missing = [s for s in self.required if s not in self.tokens[token]]
            if missing:
                challenge = f'Bearer error="insufficient_scope", scope="{" ".join(self.required)}"'
                await self._reject(send, 403, challenge)
                return
        await self.app(scope, receive, send)

    async def _reject(self, send, status: int, challenge: str) -> None:
        self.rejected.append(status)
        body = json.dumps({"error": "invalid_token" if status == 401 else "insufficient_scope"}).encode()
        await send({
            "type": "http.response.start",
            "status": status,
            "headers": [
                (b"content-type", b"application/json"),
                (b"www-authenticate", challenge.encode()),
            ],
        })
        await send({"type": "http.response.body", "body": body})


@asynccontextmanager
async def guarded_server(tokens: dict[str, set[str]]):
    """Serve a one-tool MCP server over streamable HTTP behind :class:`GuardedApp`."""
    mcp = FastMCP("guarded-fixture")

    @mcp.tool()
    def echo(text: str) -> str:
        """Echo text back"""
        return text

    guard = GuardedApp(mcp.streamable_http_app(), tokens)
    port = free_port()
    server = uvicorn.Server(uvicorn.Config(
        guard,
        host="127.0.0.1",
        port=port,
        log_level="warning",
        lifespan="on",
        timeout_graceful_shutdown=2
    ))
    task = asyncio.create_task(server.serve())
    try:
        while not server.started:
            if task.done():
                task.result()
                raise RuntimeError("MCP test server exited during startup")
            await asyncio.sleep(0.01)
        guard.url = f"http://127.0.0.1:{port}/mcp"
        yield guard
    finally:
        server.should_exit = True
        await task
