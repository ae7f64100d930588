import asyncio
import shlex
import sys

import httpx
import pytest

from mcp_debug.client.agent import AgentClient, ClientState
from mcp_debug.client.notifications import (
    NOTIFICATION_PROMPTS_LIST_CHANGED,
    NOTIFICATION_TOOLS_LIST_CHANGED,
    NotificationKind,
)
from mcp_debug.client.session import BearerAuth, Subscription, TransportSession, parse_bearer_challenge
from mcp_debug.config import AgentConfig, Endpoint, OAuthConfig
from mcp_debug.errors import InsufficientScopeError, TransportError, UnauthorizedError
from mcp_debug.oauth.models import Token
from tests.conftest import ENDPOINT, FakeOAuth, guarded_server, make_logger, output

FIXTURE_SERVER = '''
from mcp.server.fastmcp import FastMCP

mcp = FastMCP("fixture-server")


@mcp.tool()
def calculate(operation: str, x: float, y: float) -> str:
    """Perform basic arithmetic"""
    if operation == "add":
        return str(x + y)
    raise ValueError(f"unsupported operation: {operation}")


@mcp.resource("docs://readme")
def readme() -> str:
    return "# Fixture"


@mcp.prompt()
def greeting(name: str) -> str:
    return f"Hello, {name}!"


if __name__ == "__main__":
    mcp.run()
'''


def make_session(**kwargs) -> TransportSession:
    return TransportSession(Endpoint(url=ENDPOINT), make_logger(**kwargs))


@pytest.mark.asyncio
async def test_bearer_auth_sends_current_token_and_reports_401():
    token = Token(access_token="first")
    seen = []
    rejected = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("Authorization"))
        if request.headers.get("Authorization") == "Bearer expired":
            return httpx.Response(401)
        return httpx.Response(200, json={})

    auth = BearerAuth(lambda: token, rejected.append)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), auth=auth) as client:
        await client.post("http://localhost:8090/mcp")
        token = Token(access_token="expired")
        response = await client.post("http://localhost:8090/mcp")

    assert seen == ["Bearer first", "Bearer expired"]
    assert response.status_code == 401
    assert len(rejected) == 1


@pytest.mark.asyncio
async def test_bearer_auth_without_token_sends_no_header():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append("Authorization" in request.headers)
        return httpx.Response(200)

    auth = BearerAuth(lambda: None, lambda response: None)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), auth=auth) as client:
        await client.get("http://localhost:8090/mcp")
    assert seen == [False]


@pytest.mark.asyncio
async def test_bearer_auth_reports_insufficient_scope_challenges():
    challenges = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/scoped":
            return httpx.Response(403, headers={
                "WWW-Authenticate": 'Bearer error="insufficient_scope", scope="files:write"'
            })
        return httpx.Response(403)

    auth = BearerAuth(lambda: Token(access_token="t"), lambda response: None, challenges.append)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler), auth=auth) as client:
        await client.post("http://localhost:8090/scoped")
        await client.post("http://localhost:8090/mcp")

    assert challenges == [{"error": "insufficient_scope", "scope": "files:write"}]


@pytest.mark.parametrize("header,expected", [
    ('Bearer error="insufficient_scope", scope="files:read files:write"',
     {"error": "insufficient_scope", "scope": "files:read files:write"}),
    ('Bearer realm="mcp", error=invalid_token', {"realm": "mcp", "error": "invalid_token"}),
    ('Basic realm="x", Bearer scope="a\\"b"', {"scope": 'a"b'}),
    ('Basic realm="x"', {}),
    ("", {}),
])
def test_parse_bearer_challenge(header, expected):
    assert parse_bearer_challenge(header) == expected


@pytest.mark.asyncio
async def test_notifications_fan_out_to_every_subscriber():
    session = make_session()
    first, second = session.subscribe(), session.subscribe()

    session.dispatch(NOTIFICATION_TOOLS_LIST_CHANGED)

    assert (await first.__anext__()).kind is NotificationKind.TOOLS_CHANGED
    assert (await second.__anext__()).method == NOTIFICATION_TOOLS_LIST_CHANGED


@pytest.mark.asyncio
async def test_keepalives_update_last_seen_but_are_not_published():
    session = make_session(verbose=True)
    subscription = session.subscribe()

    session.dispatch("notifications/ping")

    assert session.last_seen is not None
    assert subscription._queue.empty()
    assert "keepalive notifications/ping" in output(session.logger)


@pytest.mark.asyncio
async def test_full_queue_drops_oldest():
    session = make_session()
    subscription = Subscription(session, maxsize=2)
    session._subscribers.add(subscription)

    session.dispatch(NOTIFICATION_TOOLS_LIST_CHANGED)
    session.dispatch(NOTIFICATION_PROMPTS_LIST_CHANGED)
    session.dispatch("notifications/custom")

    assert subscription.dropped == 1
    assert (await subscription.__anext__()).kind is NotificationKind.PROMPTS_CHANGED
    assert (await subscription.__anext__()).kind is NotificationKind.UNKNOWN


@pytest.mark.asyncio
async def test_close_ends_subscriptions():
    session = make_session()
    subscription = session.subscribe()
    session.dispatch(NOTIFICATION_TOOLS_LIST_CHANGED)

    await session.close()

    received = [n async for n in subscription]
    assert [n.kind for n in received] == [NotificationKind.TOOLS_CHANGED]


@pytest.mark.asyncio
async def test_closed_subscription_stops_receiving():
    session = make_session()
    async with session.subscribe() as subscription:
        pass
    session.dispatch(NOTIFICATION_TOOLS_LIST_CHANGED)
    assert [n async for n in subscription] == []


@pytest.mark.asyncio
async def test_call_before_connect_fails():
    session = make_session()
    with pytest.raises(TransportError, match="not connected"):
        await session.call("tools/list")


@pytest.mark.asyncio
async def test_connect_to_unreachable_endpoint_fails():
    session = TransportSession(Endpoint(url="http://127.0.0.1:9/mcp"), make_logger(), read_timeout=5)
    with pytest.raises(TransportError):
        await asyncio.wait_for(session.connect(), 30)
    assert not session.alive
    await session.close()


@pytest.mark.asyncio
async def test_stdio_round_trip(tmp_path):
    """Agent client against a real FastMCP server over stdio"""
    script = tmp_path / "fixture_server.py"
    script.write_text(FIXTURE_SERVER)
    command = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"
    config = AgentConfig(endpoint=Endpoint(url=command, transport="stdio"))
    client = AgentClient(config, make_logger())

    try:
        async with asyncio.timeout(60):
            await client.run()
            assert client.session.alive
            assert client.find_tool("calculate") is not None
            assert client.find_resource("docs://readme") is not None
            assert client.find_prompt("greeting").required_arguments == ["name"]

            result = await client.call_tool("calculate", {"operation": "add", "x": 5, "y": 3})
            assert result["content"][0]["text"] == "8.0"

            contents = await client.get_resource("docs://readme")
            assert contents["contents"][0]["text"] == "# Fixture"

            prompt = await client.get_prompt("greeting", {"name": "Alice"})
            assert prompt["messages"][0]["content"]["text"] == "Hello, Alice!"

            await client.ping()
    finally:
        await client.close()
    assert not client.session.alive


def echo_params(text: str) -> dict:
    return {"name": "echo", "arguments": {"text": text}}


@pytest.mark.asyncio
async def test_rejected_token_is_reported_and_reconnect_recovers(no_proxy):
    """A 401 from a streamable HTTP server surfaces as UnauthorizedError; a new connection carries the new token"""
    async with guarded_server({"first": set()}) as server:
        session = TransportSession(Endpoint(url=server.url), make_logger(), read_timeout=10)
        try:
            async with asyncio.timeout(60):
                await session.connect(Token(access_token="first"))
                subscription = session.subscribe()
                server.tokens = {"second": set()}

                with pytest.raises(UnauthorizedError, match="HTTP 401"):
                    await session.call("tools/call", echo_params("hi"))
                assert 401 in server.rejected

                await session.reconnect(Token(access_token="second"))
                result = await session.call("tools/call", echo_params("hi"))
                assert result["content"][0]["text"] == "hi"
                assert session.token.access_token == "second"

                # Listeners attached before the switch keep receiving
                session.dispatch(NOTIFICATION_TOOLS_LIST_CHANGED)
                assert (await subscription.__anext__()).kind is NotificationKind.TOOLS_CHANGED
        finally:
            await session.close()


@pytest.mark.asyncio
async def test_insufficient_scope_names_the_required_scopes(no_proxy):
    async with guarded_server({"narrow": set()}) as server:
        session = TransportSession(Endpoint(url=server.url), make_logger(), read_timeout=10)
        try:
            async with asyncio.timeout(60):
                await session.connect(Token(access_token="narrow"))
                server.required = ("files:read", "files:write")

                with pytest.raises(InsufficientScopeError) as exc:
                    await session.call("tools/call", echo_params("hi"))
                assert exc.value.scopes == ("files:read", "files:write")
                assert 403 in server.rejected
        finally:
            await session.close()


@pytest.mark.asyncio
async def test_expired_token_is_refreshed_and_call_retried_over_http(no_proxy):
    """One 401 on a live streamable HTTP connection leads to one refresh, a reconnect and one retry"""
    async with guarded_server({"auth-1": set()}) as server:
        config = AgentConfig(endpoint=Endpoint(url=server.url), oauth=OAuthConfig(enabled=True))
        oauth = FakeOAuth()
        client = AgentClient(config, make_logger(), oauth=oauth)
        try:
            async with asyncio.timeout(60):
                await client.run()
                assert client.find_tool("echo") is not None
                server.tokens = {"refreshed-1": set()}

                result = await client.call_tool("echo", {"text": "hi"})

                assert result["content"][0]["text"] == "hi"
                assert oauth.refreshes == 1
                assert oauth.authorizations == 1
                assert server.rejected.count(401) >= 1
                assert client.state is ClientState.CONNECTED
                assert client.session.alive
        finally:
            await client.close()


@pytest.mark.asyncio
async def test_insufficient_scope_steps_up_over_http(no_proxy):
    async with guarded_server({"auth-1": set(), "stepped-1": {"files:write"}}) as server:
        config = AgentConfig(endpoint=Endpoint(url=server.url), oauth=OAuthConfig(enabled=True))
        oauth = FakeOAuth()
        client = AgentClient(config, make_logger(), oauth=oauth)
        try:
            async with asyncio.timeout(60):
                await client.run()
                server.required = ("files:write",)

                result = await client.call_tool("echo", {"text": "hi"})

                assert result["content"][0]["text"] == "hi"
                assert oauth.step_ups == [("files:write",)]
                assert oauth.refreshes == 0
                assert client.session.token.access_token == "stepped-1"
        finally:
            await client.close()
