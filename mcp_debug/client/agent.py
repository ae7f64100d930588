"""Agent client: connection lifecycle, capability tracking and authenticated calls."""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Optional, TypeVar

from mcp_debug.client.cache import (
    CapabilityCache,
    CapabilityDiff,
    CapabilityKind,
    CapabilitySet,
    PromptDescriptor,
    ResourceDescriptor,
    ToolDescriptor,
)
from mcp_debug.client.notifications import Notification, NotificationKind
from mcp_debug.client.session import TransportSession
from mcp_debug.config import AgentConfig
from mcp_debug.errors import (
    ClientClosedError,
    InsufficientScopeError,
    MCPDebugError,
    ReauthRequiredError,
    RemoteError,
    TransportError,
    UnauthorizedError,
)
from mcp_debug.logger import Logger
from mcp_debug.oauth.manager import OAuthManager
from mcp_debug.oauth.models import Token

T = TypeVar("T")


class ClientState(str, Enum):
    DISCONNECTED = "disconnected"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    LISTENING = "listening"
    IDLE = "idle"
    REAUTHENTICATING = "reauthenticating"
    CLOSED = "closed"


class AgentClient:
    """
    Connects to one MCP endpoint and keeps its capabilities current.

    Both front ends (REPL and pass-through server) use only the public
    methods of this class.
    """

    def __init__(
        self,
        config: AgentConfig,
        logger: Logger,
        session: Optional[TransportSession] = None,
        oauth: Optional[OAuthManager] = None
    ):
        self.config = config
        self.logger = logger
        self.session = session or TransportSession(
            config.endpoint,
            logger,
            client_name=config.client_name,
            client_version=config.version
        )
        if oauth is None and config.oauth.enabled:
            oauth = OAuthManager(config.endpoint, logger)
        self.oauth = oauth
        self.cache = CapabilityCache(self._list, self.supports)
        self._state = ClientState.DISCONNECTED
        self._reauth_lock = asyncio.Lock()

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def server_info(self) -> dict[str, Any]:
        """``serverInfo`` from the initialize handshake (empty before connecting)."""
        return self.session.server_info

    def supports(self, kind: CapabilityKind) -> bool:
        """Whether the server advertised ``kind`` in its initialize capabilities."""
        return kind.value in self.session.server_capabilities

    def snapshot(self) -> CapabilitySet:
        return self.cache.snapshot()

    def find_tool(self, name: str) -> Optional[ToolDescriptor]:
        return self.cache.snapshot().tools.get(name)

    def find_resource(self, uri: str) -> Optional[ResourceDescriptor]:
        return self.cache.snapshot().resources.get(uri)

    def find_prompt(self, name: str) -> Optional[PromptDescriptor]:
        return self.cache.snapshot().prompts.get(name)

    async def run(self) -> None:
        """
        Validate, authorize, connect and load the initial capabilities.

        Raises:
            ConfigError: If the configuration is invalid
            AuthError: If authorization fails (stage ``authorize``)
            TransportError: If the endpoint is unreachable (stage ``connect``)
        """
        self._ensure_open()
        try:
            self.config.check()
        except MCPDebugError as e:
            raise e.with_stage("config")

        token = None
        if self.config.oauth.enabled:
            self._state = ClientState.AUTHENTICATING
            token = await self._staged("authorize", self.oauth.authorize(self.config.oauth))

        await self._staged("connect", self._connect(token))
        self._state = ClientState.CONNECTED

        server = self.server_info
        self.logger.success(
            f"Connected to MCP server: {server.get('name', 'unknown')} {server.get('version', '')}".rstrip()
        )

        diffs = await self._staged("refresh", self.cache.refresh_all())
        for diff in diffs:
            self._log_initial(diff)

    async def listen(self) -> None:
        """
        Apply notifications to the cache until cancelled.

        Raises:
            asyncio.CancelledError: Propagated as-is when cancelled
            TransportError: If the notification stream ends (stage ``listen``)
        """
        self._ensure_open()
        self._state = ClientState.LISTENING
        self.logger.info("Listening for notifications...")
        try:
            async with self.session.subscribe() as subscription:
                async for notification in subscription:
                    await self._handle_notification(notification)
        finally:
            if self._state is not ClientState.CLOSED:
                self._state = ClientState.IDLE

        if self._state is ClientState.CLOSED:
            return
        await self.close()
        raise TransportError("notification stream closed by the server", stage="listen")

    async def call_tool(self, name: str, arguments: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """Invoke a tool on the server and return the raw ``CallToolResult``."""
        params = {"name": name, "arguments": arguments or {}}
        return await self._staged("call", self._call_with_reauth("tools/call", params))

    async def get_resource(self, uri: str) -> dict[str, Any]:
        return await self._staged("call", self._call_with_reauth("resources/read", {"uri": uri}))

    async def get_prompt(self, name: str, arguments: Optional[dict[str, str]] = None) -> dict[str, Any]:
        params: dict[str, Any] = {"name": name}
        if arguments:
            params["arguments"] = arguments
        return await self._staged("call", self._call_with_reauth("prompts/get", params))

    async def ping(self) -> dict[str, Any]:
        return await self._staged("call", self._call_with_reauth("ping"))

    async def refresh(self, kind: Optional[CapabilityKind] = None) -> list[CapabilityDiff]:
        """Re-list one kind, or all of them, and log what changed."""
        self._ensure_open()
        kinds = [kind] if kind is not None else list(CapabilityKind)
        diffs = []
        for each in kinds:
            diff = await self._staged("refresh", self.cache.refresh(each))
            self._log_diff(diff)
            diffs.append(diff)
        return diffs

    async def close(self) -> None:
        """Shut down the session. Safe to call more than once."""
        if self._state is ClientState.CLOSED:
            return
        self._state = ClientState.CLOSED
        try:
            await self.session.close()
        finally:
            if self.oauth is not None:
                await self.oauth.close()

    def _ensure_open(self) -> None:
        if self._state is ClientState.CLOSED:
            raise ClientClosedError("client is closed")

    async def _staged(self, stage: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except MCPDebugError as e:
            raise e.with_stage(stage)

    async def _connect(self, token: Optional[Token]) -> None:
        try:
            await self.session.connect(token)
            return
        except UnauthorizedError as e:
            if not self.config.oauth.enabled:
                raise ReauthRequiredError("server requires authorization - retry with --oauth") from e
            rejection = e

        self._state = ClientState.REAUTHENTICATING
        if isinstance(rejection, InsufficientScopeError) and rejection.scopes and self.config.oauth.step_up:
            self.logger.warning(f"Server requires additional scopes: {', '.join(rejection.scopes)}")
            token = await self._staged("authorize", self.oauth.step_up(rejection.scopes))
        else:
            self.logger.warning("Server rejected the access token, re-authorizing...")
            token = await self._staged("authorize", self.oauth.authorize(self.config.oauth))
        try:
            await self.session.connect(token)
        except UnauthorizedError as e:
            raise ReauthRequiredError("server rejected the new access token") from e

    async def _list(self, method: str) -> dict[str, Any]:
        return await self._call_with_reauth(method)

    async def _call_with_reauth(self, method: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """
        Send one request, renewing the token at most once on HTTP 401.

        A 403 ``insufficient_scope`` answer triggers step-up authorization,
        up to ``step_up_max_retries`` times for this request.
        """
        self._ensure_open()
        await self._renew_if_expired()

        reauthenticated = False
        step_ups = 0
        while True:
            used = self.session.token
            try:
                return await self._call(method, params)
            except InsufficientScopeError as e:
                if step_ups >= self.config.oauth.step_up_max_retries:
                    raise ReauthRequiredError(
                        f"server still requires scope {' '.join(e.scopes) or '(unspecified)'} "
                        f"after {step_ups} step-up authorization(s)"
                    ) from e
                step_ups += 1
                await self._step_up(used, e, step_ups)
            except UnauthorizedError as e:
                if reauthenticated:
                    raise ReauthRequiredError("server still rejects the access token after re-authorization") from e
                reauthenticated = True
                await self._reauthenticate(used, e)

    async def _call(self, method: str, params: Optional[dict[str, Any]]) -> dict[str, Any]:
        try:
            return await self.session.call(method, params)
        except TransportError:
            if not self.session.alive:
                await self.close()
            raise

    async def _renew_if_expired(self) -> None:
        token = self.session.token
        if self.oauth is None or token is None or not token.is_expired:
            return
        self.logger.info("Access token expired, renewing before the request...")
        await self._reauthenticate(token)

    async def _reauthenticate(self, used: Optional[Token], cause: Optional[UnauthorizedError] = None) -> None:
        if not self.config.oauth.enabled:
            raise ReauthRequiredError("server requires authorization (HTTP 401) - retry with --oauth") from cause

        previous = self._state
        self._state = ClientState.REAUTHENTICATING
        try:
            async with self._reauth_lock:
                # Another caller already renewed the token while we waited
                if self.session.token is not used:
                    return
                try:
                    token = await self.oauth.refresh(used)
                except ReauthRequiredError as e:
                    self.logger.warning(f"{e.message}; starting a new authorization...")
                    token = await self._staged("authorize", self.oauth.authorize(self.config.oauth))
                await self._reconnect(token)
        finally:
            if self._state is ClientState.REAUTHENTICATING:
                self._state = previous

    async def _step_up(self, used: Optional[Token], cause: InsufficientScopeError, attempt: int) -> None:
        oauth = self.config.oauth
        if not oauth.enabled:
            raise ReauthRequiredError(
                f"server requires scope {' '.join(cause.scopes) or '(unspecified)'} - retry with --oauth"
            ) from cause
        if not oauth.step_up:
            raise ReauthRequiredError(
                f"server requires scope {' '.join(cause.scopes) or '(unspecified)'} and step-up is disabled"
            ) from cause
        if not cause.scopes:
            raise ReauthRequiredError("server reported insufficient_scope without naming the required scopes") from cause

        self.logger.warning(f"Insufficient scope for this request; server requires: {', '.join(cause.scopes)}")
        self.logger.info(f"Step-up authorization attempt {attempt}/{oauth.step_up_max_retries}")

        previous = self._state
        self._state = ClientState.REAUTHENTICATING
        try:
            async with self._reauth_lock:
                if self.session.token is not used:
                    return
                token = await self._staged("authorize", self.oauth.step_up(cause.scopes))
                await self._reconnect(token)
            self.logger.success("Additional permissions granted")
        finally:
            if self._state is ClientState.REAUTHENTICATING:
                self._state = previous

    async def _reconnect(self, token: Token) -> None:
        # Streamable HTTP drops its streams after a rejected request, so the new token gets a new connection
        try:
            await self.session.reconnect(token)
        except UnauthorizedError as e:
            raise ReauthRequiredError("server rejected the new access token") from e
        except TransportError:
            await self.close()
            raise

    async def _handle_notification(self, notification: Notification) -> None:
        if notification.kind is NotificationKind.LOG_MESSAGE:
            params = notification.params or {}
            self.logger.server_log(str(params.get("level", "info")), params.get("data"), params.get("logger"))
            return

        self.logger.notification(notification.method)
        if not notification.is_list_changed:
            return

        try:
            diff = await self._staged("refresh", self.cache.apply(notification))
        except RemoteError as e:
            self.logger.error(f"Failed to refresh after {notification.method}: {e}")
            return
        if diff is not None:
            self._log_diff(diff)

    def _log_initial(self, diff: CapabilityDiff) -> None:
        if diff.skipped:
            self.logger.info_verbose(f"Server does not advertise {diff.kind.value}")
            return
        self.logger.info(f"Found {len(diff.added)} {diff.kind.value}")
        for key in diff.added:
            self.logger.info_verbose(f"  • {key}")

    def _log_diff(self, diff: CapabilityDiff) -> None:
        label = diff.kind.label
        if diff.skipped:
            self.logger.warning(f"Server does not support {diff.kind.value}")
            return
        if not diff.changed:
            self.logger.info(f"No {label.lower()} changes detected")
            return

        self.logger.info(f"{label} changes detected:")
        for key in diff.unchanged:
            self.logger.info(f"  ✓ Unchanged: {key}")
        for key in diff.added:
            self.logger.success(f"  + Added: {key}")
        for key in diff.removed:
            self.logger.warning(f"  - Removed: {key}")
