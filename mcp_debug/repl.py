"""Interactive console for exploring an MCP server through the agent client."""

import asyncio
import base64
import binascii
import json
import queue
import threading
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from mcp_debug.client.agent import AgentClient, ClientState
from mcp_debug.client.cache import CapabilityKind, PromptDescriptor
from mcp_debug.errors import MCPDebugError
from mcp_debug.logger import Logger, pretty_json

PROMPT = "MCP> "

HELP_TEXT = """Available commands:
  help, ?                      - Show this help message
  list tools                   - List all available tools
  list resources               - List all available resources
  list prompts                 - List all available prompts
  describe tool <name>         - Show detailed information about a tool
  describe resource <uri>      - Show detailed information about a resource
  describe prompt <name>       - Show detailed information about a prompt
  call <tool> {json}           - Execute a tool with JSON arguments
  get <resource-uri>           - Retrieve a resource
  prompt <name> {json}         - Get a prompt with JSON arguments
  notifications <on|off>       - Enable/disable live notification handling
  refresh [tools|resources|prompts]
                               - Re-list capabilities from the server
  exit, quit                   - Exit the REPL (Ctrl+D also works)

Examples:
  call calculate {"operation": "add", "x": 5, "y": 3}
  get docs://readme
  prompt greeting {"name": "Alice"}"""

_KIND_ALIASES = {
    "tool": CapabilityKind.TOOLS,
    "tools": CapabilityKind.TOOLS,
    "resource": CapabilityKind.RESOURCES,
    "resources": CapabilityKind.RESOURCES,
    "prompt": CapabilityKind.PROMPTS,
    "prompts": CapabilityKind.PROMPTS,
}


class CommandError(Exception):
    """Invalid REPL input; printed and the loop continues."""


class ConsoleLineReader:
    """
    Reads console lines on a daemon thread.

    Awaiting :meth:`readline` stays cancellable: the loop never blocks on
    stdin, and a pending read does not keep the process alive on exit.
    """

    def __init__(self, console: Console, prompt: str = PROMPT):
        self.console = console
        self.prompt = prompt
        self._requests: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None

    async def readline(self) -> Optional[str]:
        """
        Returns:
            The next line, or None at end of input
        """
        if self._thread is None:
            self._thread = threading.Thread(target=self._worker, name="repl-reader", daemon=True)
            self._thread.start()

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._requests.put((loop, future))
        return await future

    def _worker(self) -> None:
        while True:
            loop, future = self._requests.get()
            try:
                result = self.console.input(self.prompt)
            except EOFError:
                result = None
            except Exception as e:
                if not _deliver(loop, future, error=e):
                    return
                continue
            if not _deliver(loop, future, result=result):
                return


def _deliver(loop: asyncio.AbstractEventLoop, future: asyncio.Future, result: Any = None,
             error: Optional[BaseException] = None) -> bool:
    def settle():
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    try:
        loop.call_soon_threadsafe(settle)
    except RuntimeError:
        # Event loop already closed
        return False
    return True


def _decoded_size(data: str) -> int:
    try:
        return len(base64.b64decode(data))
    except (binascii.Error, ValueError):
        return len(data)


def display_text(console: Console, text: str) -> None:
    """Print text, pretty-printing it when it is a JSON document."""
    try:
        console.print(pretty_json(json.loads(text)), markup=False)
    except (TypeError, ValueError):
        console.print(text, markup=False)


def describe_content(item: dict[str, Any]) -> Optional[str]:
    """One-line summary for non-text content; None for text."""
    kind = item.get("type")
    if kind == "image":
        return f"[Image: MIME type {item.get('mimeType')}, {_decoded_size(item.get('data', ''))} bytes]"
    if kind == "audio":
        return f"[Audio: MIME type {item.get('mimeType')}, {_decoded_size(item.get('data', ''))} bytes]"
    if kind == "resource_link":
        return f"[Resource link: {item.get('uri')}]"
    if kind == "resource":
        resource = item.get("resource") or {}
        if "blob" in resource:
            return f"[Embedded resource {resource.get('uri')}: {_decoded_size(resource['blob'])} bytes]"
        return None
    if kind == "text":
        return None
    return f"[{kind} content]"


def display_content(console: Console, item: dict[str, Any]) -> None:
    summary = describe_content(item)
    if summary is not None:
        console.print(summary, markup=False)
    elif item.get("type") == "resource":
        display_text(console, (item.get("resource") or {}).get("text", ""))
    else:
        display_text(console, item.get("text", ""))


def display_tool_result(console: Console, result: dict[str, Any]) -> None:
    content = result.get("content") or []
    if result.get("isError"):
        console.print("[bold red]Tool returned an error:[/bold red]")
        for item in content:
            if item.get("type") == "text":
                console.print(f"  {item.get('text', '')}", markup=False)
        return

    console.print("Result:")
    for item in content:
        display_content(console, item)
    if not content and result.get("structuredContent") is not None:
        console.print(pretty_json(result["structuredContent"]), markup=False)


def display_resource(console: Console, result: dict[str, Any]) -> None:
    console.print("Contents:")
    for item in result.get("contents") or []:
        if "text" in item:
            display_text(console, item["text"])
        elif "blob" in item:
            console.print(f"[Binary data: {_decoded_size(item['blob'])} bytes]", markup=False)


def display_prompt_result(console: Console, result: dict[str, Any]) -> None:
    if result.get("description"):
        console.print(f"Description: {result['description']}", markup=False)
    console.print("Messages:")
    for i, message in enumerate(result.get("messages") or [], start=1):
        console.print(f"\n[{i}] Role: {message.get('role')}", markup=False)
        content = message.get("content") or {}
        summary = describe_content(content)
        if summary is None:
            text = content.get("text") if content.get("type") == "text" else (content.get("resource") or {}).get("text")
            summary = text or ""
        console.print(f"Content: {summary}", markup=False)


def parse_json_object(raw: str, example: str) -> dict[str, Any]:
    """Parse REPL arguments; empty input means no arguments."""
    raw = raw.strip()
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        raise CommandError(f"arguments must be valid JSON\nExample: {example}") from None
    if not isinstance(value, dict):
        raise CommandError(f"arguments must be a JSON object\nExample: {example}")
    return value


def prompt_arguments(prompt: PromptDescriptor, raw: str) -> dict[str, str]:
    """
    Parse prompt arguments, coerce every value to a string and check that
    required arguments are present.

    Raises:
        CommandError: If the JSON is invalid or required arguments are missing
    """
    values = parse_json_object(raw, f'prompt {prompt.name} {{"arg1": "value1"}}')
    arguments = {
        key: value if isinstance(value, str) else json.dumps(value)
        for key, value in values.items()
    }
    missing = [name for name in prompt.required_arguments if name not in arguments]
    if missing:
        lines = [f"missing required arguments: {', '.join(missing)}", "Required arguments:"]
        for arg in prompt.arguments or ():
            if arg.required:
                lines.append(f"  - {arg.name}: {arg.description or ''}")
        raise CommandError("\n".join(lines))
    return arguments


class REPL:
    """Line-oriented command loop on top of :class:`AgentClient`."""

    def __init__(
        self,
        client: AgentClient,
        logger: Logger,
        reader: Optional[ConsoleLineReader] = None
    ):
        self.client = client
        self.logger = logger
        self.console = logger.console
        self.reader = reader or ConsoleLineReader(self.console)
        self._listener: Optional[asyncio.Task] = None
        self._commands: dict[str, Callable[[str], Awaitable[Optional[bool]]]] = {
            "help": self._help,
            "?": self._help,
            "exit": self._exit,
            "quit": self._exit,
            "list": self._list,
            "describe": self._describe,
            "call": self._call,
            "get": self._get,
            "prompt": self._prompt,
            "notifications": self._notifications,
            "refresh": self._refresh,
        }

    async def run(self) -> None:
        """
        Read and execute commands until ``exit``, end of input or cancellation.

        The notification listener is stopped and the client closed on the
        way out.
        """
        self.display_welcome()
        self.start_notifications()
        try:
            while True:
                line = await self.reader.readline()
                if line is None:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    if await self.execute(line) is False:
                        break
                except (CommandError, MCPDebugError) as e:
                    if self.client.state is ClientState.CLOSED:
                        raise
                    self.logger.error(f"Error: {e}")
                self.console.print()
        finally:
            await self.stop_notifications()
            await self.client.close()
        self.logger.info("Goodbye!")

    def display_welcome(self) -> None:
        server = self.client.server_info
        welcome_panel = Panel(
            "[bold cyan]MCP REPL[/bold cyan]\n"
            f"Connected to {escape(str(server.get('name', 'unknown')))} at {escape(self.client.config.endpoint.url)}\n\n"
            "Type 'help' for available commands, 'exit' to quit.",
            title="mcp-debug",
            border_style="cyan"
        )
        self.console.print(welcome_panel)
        self.console.print()

    async def execute(self, line: str) -> Optional[bool]:
        """
        Run one command line.

        Returns:
            False when the REPL should exit
        """
        command, _, rest = line.strip().partition(" ")
        handler = self._commands.get(command.lower())
        if handler is None:
            raise CommandError(f"unknown command: {command}. Type 'help' for available commands")
        return await handler(rest.strip())

    def start_notifications(self) -> bool:
        if self._listener is not None and not self._listener.done():
            return False
        self._listener = asyncio.create_task(self._listen(), name="repl-notifications")
        return True

    async def stop_notifications(self) -> bool:
        listener, self._listener = self._listener, None
        if listener is None or listener.done():
            return False
        listener.cancel()
        await asyncio.gather(listener, return_exceptions=True)
        return True

    async def _listen(self) -> None:
        try:
            await self.client.listen()
        except MCPDebugError as e:
            self.logger.error(f"Notification listener stopped: {e}")

    def _kind(self, word: str, usage: str) -> CapabilityKind:
        kind = _KIND_ALIASES.get(word.lower())
        if kind is None:
            raise CommandError(usage)
        return kind

    def _require(self, kind: CapabilityKind) -> bool:
        if self.client.supports(kind):
            return True
        self.console.print(f"Server does not support {kind.value} capability.")
        return False

    async def _help(self, args: str) -> None:
        self.console.print(HELP_TEXT, markup=False)

    async def _exit(self, args: str) -> bool:
        return False

    async def _list(self, args: str) -> None:
        usage = "usage: list <tools|resources|prompts>"
        if not args:
            raise CommandError(usage)
        kind = self._kind(args.split()[0], usage)
        if not self._require(kind):
            return

        items = self.client.snapshot().get(kind)
        if not items:
            self.console.print(f"No {kind.value} available.")
            return

        self.console.print(f"Available {kind.value} ({len(items)}):")
        for i, (key, descriptor) in enumerate(items.items(), start=1):
            description = descriptor.description or getattr(descriptor, "name", None) or ""
            self.console.print(f"  {i}. {escape(key):<30} - {escape(description)}")

    async def _describe(self, args: str) -> None:
        usage = "usage: describe <tool|resource|prompt> <name>"
        word, _, name = args.partition(" ")
        name = name.strip()
        if not name:
            raise CommandError(usage)
        kind = self._kind(word, usage)
        if not self._require(kind):
            return

        if kind is CapabilityKind.TOOLS:
            tool = self.client.find_tool(name)
            if tool is None:
                raise CommandError(f"tool not found: {name}")
            self.console.print(f"Tool: {tool.name}", markup=False)
            self.console.print(f"Description: {tool.description or ''}", markup=False)
            self.console.print("Input Schema:")
            self.console.print(pretty_json(tool.input_schema), markup=False)
        elif kind is CapabilityKind.RESOURCES:
            resource = self.client.find_resource(name)
            if resource is None:
                raise CommandError(f"resource not found: {name}")
            self.console.print(f"Resource: {resource.uri}", markup=False)
            self.console.print(f"Name: {resource.name or ''}", markup=False)
            if resource.description:
                self.console.print(f"Description: {resource.description}", markup=False)
            if resource.mime_type:
                self.console.print(f"MIME Type: {resource.mime_type}", markup=False)
        else:
            prompt = self.client.find_prompt(name)
            if prompt is None:
                raise CommandError(f"prompt not found: {name}")
            self.console.print(f"Prompt: {prompt.name}", markup=False)
            self.console.print(f"Description: {prompt.description or ''}", markup=False)
            if prompt.arguments:
                self.console.print("Arguments:")
                for arg in prompt.arguments:
                    required = " (required)" if arg.required else ""
                    self.console.print(f"  - {arg.name}{required}: {arg.description or ''}", markup=False)

    async def _call(self, args: str) -> None:
        name, _, raw = args.partition(" ")
        if not name:
            raise CommandError("usage: call <tool-name> {json}")
        if not self._require(CapabilityKind.TOOLS):
            return
        if self.client.find_tool(name) is None:
            raise CommandError(f"tool not found: {name}")
        arguments = parse_json_object(raw, f'call {name} {{"param1": "value1", "param2": 123}}')

        self.console.print(f"Executing tool: {escape(name)}...")
        result = await self.client.call_tool(name, arguments)
        display_tool_result(self.console, result)

    async def _get(self, args: str) -> None:
        if not args:
            raise CommandError("usage: get <resource-uri>")
        if not self._require(CapabilityKind.RESOURCES):
            return
        uri = args.split()[0]

        self.console.print(f"Retrieving resource: {escape(uri)}...")
        result = await self.client.get_resource(uri)
        display_resource(self.console, result)

    async def _prompt(self, args: str) -> None:
        name, _, raw = args.partition(" ")
        if not name:
            raise CommandError("usage: prompt <prompt-name> {json}")
        if not self._require(CapabilityKind.PROMPTS):
            return
        prompt = self.client.find_prompt(name)
        if prompt is None:
            raise CommandError(f"prompt not found: {name}")
        arguments = prompt_arguments(prompt, raw)

        self.console.print(f"Getting prompt: {escape(name)}...")
        result = await self.client.get_prompt(name, arguments)
        display_prompt_result(self.console, result)

    async def _notifications(self, args: str) -> None:
        setting = args.lower()
        if setting == "on":
            if self.start_notifications():
                self.console.print("Notifications enabled")
            else:
                self.console.print("Notifications already enabled")
        elif setting == "off":
            await self.stop_notifications()
            self.console.print("Notifications disabled")
        else:
            raise CommandError("usage: notifications <on|off>")

    async def _refresh(self, args: str) -> None:
        kind = None
        if args:
            kind = self._kind(args.split()[0], "usage: refresh [tools|resources|prompts]")
        await self.client.refresh(kind)
