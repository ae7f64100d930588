"""MCP transport session over streamable HTTP or stdio.

The session owns one SDK ``ClientSession``. The SDK's transport context
managers are entered and exited inside a single owner task, so calls and
shutdown can come from any task without crossing anyio cancel scopes.
"""

import asyncio
import logging
import re
from contextlib import AsyncExitStack
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import anyio
import httpx
from mcp import ClientSession, StdioServerParameters, types
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError
from mcp.shared.session import RequestResponder
from pydantic import AnyUrl, BaseModel

from mcp_debug.client.notifications import Notification, is_keepalive
from mcp_debug.config import TRANSPORT_STDIO, Endpoint
from mcp_debug.errors import (
    InsufficientScopeError,
    MCPDebugError,
    RemoteError,
    TransportError,
    UnauthorizedError,
)
from mcp_debug.logger import Logger
from mcp_debug.oauth.models import Token

logger = logging.getLogger(__name__)

DEFAULT_READ_TIMEOUT = 120.0
CLOSE_TIMEOUT = 5.0
SUBSCRIPTION_QUEUE_SIZE = 100

# Connection-level failures; anything else raised by the SDK is a bug worth surfacing
CONNECTION_ERRORS = (
    OSError,
    httpx.TransportError,
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def root_cause(exc: BaseException) -> BaseException:
    """First leaf of an exception group (anyio wraps transport failures in groups)."""
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return exc


CHALLENGE_PARAM = re.compile(r'([A-Za-z][\w.-]*)\s*=\s*(?:"((?:[^"\\]|\\.)*)"|([^\s,"]+))')


def parse_bearer_challenge(header: str) -> dict[str, str]:
    """
    Parameters of the ``Bearer`` challenge in a WWW-Authenticate header (RFC 6750 §3).

    Returns:
        Lower-cased parameter names mapped to their unquoted values; empty
        when the header carries no Bearer challenge
    """
    match = re.search(r"(?:^|,)\s*Bearer(?:\s+|$)", header, re.IGNORECASE)
    if match is None:
        return {}

    params: dict[str, str] = {}
    for param in CHALLENGE_PARAM.finditer(header, match.end()):
        quoted, token = param.group(2), param.group(3)
        value = re.sub(r"\\(.)", r"\1", quoted) if quoted is not None else token
        params.setdefault(param.group(1).lower(), value)
    return params


class BearerAuth(httpx.Auth):
    """Adds the current bearer token to every request and reports rejected credentials."""

    def __init__(
        self,
        token_provider: Callable[[], Optional[Token]],
        on_unauthorized: Callable[[httpx.Response], None],
        on_insufficient_scope: Optional[Callable[[dict[str, str]], None]] = None
    ):
        self._token_provider = token_provider
        self._on_unauthorized = on_unauthorized
        self._on_insufficient_scope = on_insufficient_scope

    def auth_flow(self, request: httpx.Request):
        token = self._token_provider()
        if token is not None:
            request.headers["Authorization"] = token.authorization_header
        response = yield request
        if response.status_code == 401:
            self._on_unauthorized(response)
        elif response.status_code == 403 and self._on_insufficient_scope is not None:
            challenge = parse_bearer_challenge(response.headers.get("WWW-Authenticate", ""))
            if challenge.get("error") == "insufficient_scope":
                self._on_insufficient_scope(challenge)


class Subscription:
    """
    One subscriber's view of the notification stream.

    Publishing never blocks: when the queue is full the oldest notification
    is dropped. Iteration ends when the session closes.
    """

    def __init__(self, session: "TransportSession", maxsize: int = SUBSCRIPTION_QUEUE_SIZE):
        self._session = session
        self._queue: asyncio.Queue[Optional[Notification]] = asyncio.Queue(maxsize)
        self._ended = False
        self.dropped = 0

    def publish(self, notification: Notification) -> None:
        if self._ended:
            return
        self._put(notification)

    def end(self) -> None:
        if not self._ended:
            self._ended = True
            self._put(None)

    def _put(self, item: Optional[Notification]) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(item)
            self.dropped += 1
            logger.warning("Notification queue full; dropped oldest notification (%d so far)", self.dropped)

    def close(self) -> None:
        self._session._unsubscribe(self)
        self.end()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Notification:
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()


async def _paginate(fetch: Callable[..., Awaitable[Any]], key: str) -> dict[str, Any]:
    items: list[Any] = []
    cursor = None
    while True:
        result = await (fetch(cursor) if cursor else fetch())
        items.extend(getattr(result, key))
        cursor = result.nextCursor
        if not cursor:
            break
    return {key: [_dump(item) for item in items]}


async def _list_tools(session: ClientSession, params: dict[str, Any]) -> dict[str, Any]:
    return await _paginate(session.list_tools, "tools")


async def _list_resources(session: ClientSession, params: dict[str, Any]) -> dict[str, Any]:
    return await _paginate(session.list_resources, "resources")


async def _list_prompts(session: ClientSession, params: dict[str, Any]) -> dict[str, Any]:
    return await _paginate(session.list_prompts, "prompts")


async def _call_tool(session: ClientSession, params: dict[str, Any]) -> dict[str, Any]:
    return _dump(await session.call_tool(params["name"], params.get("arguments") or {}))


async def _read_resource(session: ClientSession, params: dict[str, Any]) -> dict[str, Any]:
    return _dump(await session.read_resource(AnyUrl(params["uri"])))


async def _get_prompt(session: ClientSession, params: dict[str, Any]) -> dict[str, Any]:
    return _dump(await session.get_prompt(params["name"], params.get("arguments") or None))


async def _ping(session: ClientSession, params: dict[str, Any]) -> dict[str, Any]:
    return _dump(await session.send_ping())


METHODS: dict[str, Callable[[ClientSession, dict[str, Any]], Awaitable[dict[str, Any]]]] = {
    "tools/list": _list_tools,
    "resources/list": _list_resources,
    "prompts/list": _list_prompts,
    "tools/call": _call_tool,
    "resources/read": _read_resource,
    "prompts/get": _get_prompt,
    "ping": _ping,
}


class TransportSession:
    """One connection to a remote MCP endpoint."""

    def __init__(
        self,
        endpoint: Endpoint,
        logger: Logger,
        client_name: str = "mcp-debug-agent",
        client_version: str = "1.0.0",
        read_timeout: float = DEFAULT_READ_TIMEOUT
    ):
        self.endpoint = endpoint
        self.logger = logger
        self.client_info = types.Implementation(name=client_name, version=client_version)
        self.read_timeout = read_timeout

        self.created_at: Optional[datetime] = None
        self.last_seen: Optional[datetime] = None
        self.server_capabilities: dict[str, Any] = {}
        self.server_info: dict[str, Any] = {}

        self._token: Optional[Token] = None
        self._session: Optional[ClientSession] = None
        self._runner: Optional[asyncio.Task] = None
        self._failure: Optional[BaseException] = None
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._broken = asyncio.Event()
        self._unauthorized = asyncio.Event()
        self._forbidden = asyncio.Event()
        self._required_scopes: tuple[str, ...] = ()
        self._subscribers: set[Subscription] = set()
        self._reconnecting = False
        self._closed = False

    @property
    def alive(self) -> bool:
        return self._session is not None and not self._broken.is_set()

    @property
    def token(self) -> Optional[Token]:
        return self._token

    def set_token(self, token: Optional[Token]) -> None:
        """Swap the bearer token used by every following HTTP request."""
        self._token = token
        self._unauthorized.clear()
        self._forbidden.clear()
        self._required_scopes = ()

    def subscribe(self) -> Subscription:
        subscription = Subscription(self)
        if self._closed or (self._runner is not None and self._runner.done()):
            subscription.end()
        else:
            self._subscribers.add(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    async def connect(self, token: Optional[Token] = None) -> dict[str, Any]:
        """
        Open the transport and perform the MCP initialize handshake.

        Args:
            token: Bearer token for HTTP transports

        Returns:
            The server's initialize result

        Raises:
            UnauthorizedError: If the server answers 401
            InsufficientScopeError: If the server answers 403 insufficient_scope
            TransportError: If the connection cannot be established
            RemoteError: If the server rejects the handshake
        """
        if self._runner is not None:
            raise TransportError("session is already connected")

        self.set_token(token)
        self._failure = None
        self._closed = False
        for event in (self._ready, self._closing, self._broken):
            event.clear()

        self.logger.info(f"Connecting to MCP server at {self.endpoint.url} using {self.endpoint.transport} transport...")
        self._runner = asyncio.create_task(self._run(), name="mcp-transport")

        events = (self._ready, self._broken, self._unauthorized, self._forbidden)
        waiters = [asyncio.ensure_future(e.wait()) for e in events]
        try:
            await asyncio.wait({self._runner, *waiters}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            await self._stop_runner()
            raise
        finally:
            for waiter in waiters:
                waiter.cancel()

        rejection = self._rejection("initialize")
        if self._ready.is_set() and self.alive and rejection is None:
            return {"serverInfo": self.server_info, "capabilities": self.server_capabilities}

        failure = self._failure
        await self._stop_runner()
        if isinstance(rejection, InsufficientScopeError):
            raise rejection
        if rejection is not None or _is_unauthorized(failure):
            raise UnauthorizedError("server rejected the connection (HTTP 401)")
        raise self._translate(failure, "failed to connect")

    async def reconnect(self, token: Optional[Token] = None) -> dict[str, Any]:
        """
        Replace the transport with a new one that uses ``token``.

        A streamable HTTP transport does not survive a rejected request, so
        a renewed token always comes with a new connection. Subscribers stay
        attached across the switch.

        Raises:
            The same errors as :meth:`connect`
        """
        if self._closed:
            raise TransportError("session is closed")
        self._reconnecting = True
        try:
            await self._stop_runner()
        finally:
            self._reconnecting = False
        return await self.connect(token)

    async def call(self, method: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """
        Send one JSON-RPC request and return its result as a dict.

        Raises:
            UnauthorizedError: If the server answers 401; never retried here
            InsufficientScopeError: If the server answers 403 insufficient_scope
            RemoteError: If the server returns a JSON-RPC error
            TransportError: If the connection is unusable
        """
        session = self._session
        if session is None or not self.alive:
            # The transport may already be gone because of the rejection itself
            raise self._rejection(method) or TransportError("not connected to an MCP server")
        handler = METHODS.get(method)
        if handler is None:
            raise TransportError(f"unsupported method: {method}")

        self.logger.request(method, params)
        result = await self._guard(method, handler(session, params or {}))
        self.last_seen = _now()
        self.logger.response(method, result)
        return result

    async def close(self) -> None:
        self._closed = True
        await self._stop_runner()
        self._end_subscribers()

    def _end_subscribers(self) -> None:
        for subscription in list(self._subscribers):
            subscription.end()
        self._subscribers.clear()

    def _rejection(self, method: str) -> Optional[UnauthorizedError]:
        if self._forbidden.is_set():
            scopes = self._required_scopes
            return InsufficientScopeError(
                f"{method} rejected: token lacks scope {' '.join(scopes) or '(unspecified)'} (HTTP 403)",
                scopes
            )
        if self._unauthorized.is_set():
            return UnauthorizedError(f"{method} rejected: access token is not valid (HTTP 401)")
        return None

    async def _guard(self, method: str, coro: Awaitable[dict[str, Any]]) -> dict[str, Any]:
        # Race the request against a rejected token or a dead connection so it never waits out the read timeout
        call = asyncio.ensure_future(coro)
        rejection = self._rejection(method)
        if rejection is not None:
            call.cancel()
            await asyncio.gather(call, return_exceptions=True)
            raise rejection

        events = (self._unauthorized, self._forbidden, self._broken)
        waiters = [asyncio.ensure_future(e.wait()) for e in events]
        try:
            await asyncio.wait({call, *waiters}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            if not call.done():
                call.cancel()
                await asyncio.gather(call, return_exceptions=True)

        failed = call.cancelled() or call.exception() is not None
        rejection = self._rejection(method)
        if failed and rejection is not None:
            raise rejection
        if call.cancelled():
            raise self._translate(self._failure, f"{method} failed")

        try:
            return call.result()
        except McpError as e:
            raise self._translate(e, f"{method} failed") from e
        except CONNECTION_ERRORS as e:
            raise TransportError(f"{method} failed: {e}") from e

    async def _run(self) -> None:
        try:
            async with AsyncExitStack() as stack:
                streams = await stack.enter_async_context(self._open_streams())
                session = await stack.enter_async_context(ClientSession(
                    streams[0],
                    streams[1],
                    read_timeout_seconds=timedelta(seconds=self.read_timeout),
                    message_handler=self._handle_message,
                    client_info=self.client_info
                ))

                self.logger.request("initialize", {"clientInfo": _dump(self.client_info)})
                result = await session.initialize()
                self.logger.response("initialize", _dump(result))

                self.server_info = _dump(result.serverInfo)
                self.server_capabilities = _dump(result.capabilities)
                self.created_at = self.last_seen = _now()
                self._session = session
                self._ready.set()

                await self._closing.wait()
        except Exception as e:
            self._failure = e
            self._broken.set()
            logger.debug("MCP transport stopped: %r", root_cause(e))
        finally:
            self._session = None
            # Subscribers outlive a transport that stops for a new token
            if not (self._reconnecting or self._unauthorized.is_set() or self._forbidden.is_set()):
                self._end_subscribers()

    def _open_streams(self):
        if self.endpoint.transport == TRANSPORT_STDIO:
            command = self.endpoint.command
            return stdio_client(StdioServerParameters(command=command[0], args=command[1:]))

        auth = BearerAuth(lambda: self._token, self._on_unauthorized, self._on_insufficient_scope)
        return streamablehttp_client(self.endpoint.url, auth=auth)

    async def _stop_runner(self) -> None:
        runner, self._runner = self._runner, None
        if runner is None:
            return
        self._closing.set()
        try:
            await asyncio.wait_for(asyncio.shield(runner), CLOSE_TIMEOUT)
        except TimeoutError:
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)

    def _on_unauthorized(self, response: httpx.Response) -> None:
        logger.debug("HTTP 401 from %s", response.request.url)
        self._unauthorized.set()

    def _on_insufficient_scope(self, challenge: dict[str, str]) -> None:
        logger.debug("HTTP 403 insufficient_scope: %s", challenge)
        self._required_scopes = tuple(challenge.get("scope", "").split())
        self._forbidden.set()

    async def _handle_message(self, message: Any) -> None:
        self.last_seen = _now()

        if isinstance(message, Exception):
            cause = root_cause(message)
            if _is_unauthorized(cause):
                self._unauthorized.set()
            elif isinstance(cause, CONNECTION_ERRORS):
                self._failure = cause
                self._broken.set()
            else:
                self.logger.warning_verbose(f"Transport reported an error: {cause}")
            return

        if isinstance(message, RequestResponder):
            # The SDK answers server requests (ping included) on its own
            method = getattr(message.request.root, "method", "request")
            if is_keepalive(method):
                self.logger.keepalive(method)
            return

        if isinstance(message, types.ServerNotification):
            root = message.root
            params = getattr(root, "params", None)
            self.dispatch(root.method, _dump(params) if isinstance(params, BaseModel) else params)

    def dispatch(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        """Fan one inbound notification out to every subscriber."""
        self.last_seen = _now()
        if is_keepalive(method):
            self.logger.keepalive(method)
            return
        self.logger.incoming(method, params)
        notification = Notification.from_method(method, params)
        for subscription in list(self._subscribers):
            subscription.publish(notification)

    def _translate(self, failure: Optional[BaseException], action: str) -> MCPDebugError:
        cause = root_cause(failure) if failure is not None else None
        if isinstance(cause, McpError):
            # JSON-RPC errors carry negative codes; others (e.g. 408) are raised locally by the SDK
            if cause.error.code < 0:
                return RemoteError(cause.error.code, cause.error.message, cause.error.data)
            return TransportError(f"{action}: {cause.error.message}")
        if cause is None:
            return TransportError(f"{action}: connection to {self.endpoint.url} closed")
        return TransportError(f"{action}: {cause}")


def _is_unauthorized(exc: Optional[BaseException]) -> bool:
    if exc is None:
        return False
    exc = root_cause(exc)
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 401
