"""Pass-through MCP server that re-exposes an upstream server to an AI host."""

import asyncio
import json
from typing import Any, Optional

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import BaseModel

from mcp_debug.client.agent import AgentClient
from mcp_debug.config import (
    DEFAULT_LISTEN_ADDR,
    SERVER_TRANSPORTS,
    TRANSPORT_STDIO,
)
from mcp_debug.errors import ConfigError, MCPDebugError
from mcp_debug.logger import Logger

DEFAULT_LISTEN_HOST = "127.0.0.1"


def parse_listen_addr(addr: str) -> tuple[str, int]:
    """
    Split ``host:port`` (host optional, as in ``:8899``).

    Raises:
        ConfigError: If the port is missing or not a valid TCP port
    """
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ConfigError(f"listen address '{addr}' must be host:port or :port")
    try:
        number = int(port)
    except ValueError:
        raise ConfigError(f"listen address '{addr}' has an invalid port") from None
    if not 0 < number < 65536:
        raise ConfigError(f"listen address '{addr}' has an out of range port")
    return host.strip("[]") or DEFAULT_LISTEN_HOST, number


def _to_json(value: Any) -> str:
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", by_alias=True, exclude_none=True)
    return json.dumps(value, ensure_ascii=False)


class PassthroughServer:
    """
    FastMCP server whose tools forward to an :class:`AgentClient`.

    Every tool returns JSON text; agent failures are reported to the host as
    tool errors carrying the same message.
    """

    def __init__(
        self,
        client: AgentClient,
        logger: Logger,
        transport: str = TRANSPORT_STDIO,
        listen_addr: str = DEFAULT_LISTEN_ADDR
    ):
        if transport not in SERVER_TRANSPORTS:
            raise ConfigError(
                f"unsupported server transport '{transport}' "
                f"(expected one of: {', '.join(SERVER_TRANSPORTS)})"
            )
        self.client = client
        self.logger = logger
        self.transport = transport
        self.host, self.port = parse_listen_addr(listen_addr)
        self.mcp = FastMCP(
            client.config.client_name,
            host=self.host,
            port=self.port,
            streamable_http_path="/mcp",
            log_level="DEBUG" if logger.verbose else "WARNING"
        )
        self._register_tools()

    async def start(self) -> None:
        """
        Connect upstream, then serve until cancelled. The agent client is
        closed on the way out.
        """
        listener: Optional[asyncio.Task] = None
        try:
            await self.client.run()
            listener = asyncio.create_task(self._listen(), name="passthrough-notifications")

            if self.transport == TRANSPORT_STDIO:
                self.logger.info("Serving MCP over stdio")
                await self.mcp.run_stdio_async()
            else:
                self.logger.info(f"Serving MCP over streamable HTTP at http://{self.host}:{self.port}/mcp")
                await self.mcp.run_streamable_http_async()
        finally:
            if listener is not None:
                listener.cancel()
                await asyncio.gather(listener, return_exceptions=True)
            await self.client.close()

    async def _listen(self) -> None:
        try:
            await self.client.listen()
        except MCPDebugError as e:
            self.logger.error(f"Upstream notification stream stopped: {e}")

    def _register_tools(self) -> None:
        client = self.client
        tool = self.mcp.tool

        @tool(name="list_tools", description="List all available tools from the connected MCP server")
        def list_tools() -> str:
            return _to_json([_dump(t) for t in client.snapshot().tools.values()])

        @tool(name="list_resources", description="List all available resources from the connected MCP server")
        def list_resources() -> str:
            return _to_json([_dump(r) for r in client.snapshot().resources.values()])

        @tool(name="list_prompts", description="List all available prompts from the connected MCP server")
        def list_prompts() -> str:
            return _to_json([_dump(p) for p in client.snapshot().prompts.values()])

        @tool(name="describe_tool", description="Get detailed information about a specific tool")
        def describe_tool(name: str) -> str:
            found = client.find_tool(name)
            if found is None:
                raise ToolError(f"tool not found: {name}")
            return _to_json(found)

        @tool(name="describe_resource", description="Get detailed information about a specific resource")
        def describe_resource(uri: str) -> str:
            found = client.find_resource(uri)
            if found is None:
                raise ToolError(f"resource not found: {uri}")
            return _to_json(found)

        @tool(name="describe_prompt", description="Get detailed information about a specific prompt")
        def describe_prompt(name: str) -> str:
            found = client.find_prompt(name)
            if found is None:
                raise ToolError(f"prompt not found: {name}")
            return _to_json(found)

        @tool(name="call_tool", description="Execute a tool with the given arguments")
        async def call_tool(name: str, arguments: Optional[dict[str, Any]] = None) -> str:
            try:
                return _to_json(await client.call_tool(name, arguments or {}))
            except MCPDebugError as e:
                raise ToolError(str(e)) from e

        @tool(name="get_resource", description="Retrieve the contents of a resource")
        async def get_resource(uri: str) -> str:
            try:
                return _to_json(await client.get_resource(uri))
            except MCPDebugError as e:
                raise ToolError(str(e)) from e

        @tool(name="get_prompt", description="Get a prompt with the given arguments")
        async def get_prompt(name: str, arguments: Optional[dict[str, str]] = None) -> str:
            try:
                return _to_json(await client.get_prompt(name, arguments))
            except MCPDebugError as e:
                raise ToolError(str(e)) from e


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)
