"""Console logger for agent progress and JSON-RPC traffic."""

import json
from datetime import datetime
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape

NOTIFICATION_PREFIX = "◆ notification"


def pretty_json(value: Any) -> str:
    """Pretty-print a JSON-compatible value, falling back to repr."""
    try:
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return repr(value)


def _timestamp() -> str:
    return datetime.now().strftime("%H:%M:%S.%f")[:-3]


class Logger:
    """
    Level-filtered console sink shared by every component.

    Verbose-only lines (keepalives, debug details) are dropped unless
    ``verbose`` is set; full JSON-RPC payloads are only rendered when
    ``json_rpc`` is set.
    """

    def __init__(
        self,
        verbose: bool = False,
        color: bool = True,
        json_rpc: bool = False,
        console: Optional[Console] = None,
        stderr: bool = False
    ):
        self.verbose = verbose
        self.json_rpc = json_rpc
        self.console = console or Console(
            stderr=stderr,
            no_color=not color,
            highlight=False
        )

    def _emit(self, style: str, symbol: str, message: str) -> None:
        self.console.print(f"[{style}]{symbol}[/{style}] {escape(message)}")

    def info(self, message: str) -> None:
        self._emit("cyan", "ℹ", message)

    def success(self, message: str) -> None:
        self._emit("green", "✓", message)

    def warning(self, message: str) -> None:
        self._emit("yellow", "⚠", message)

    def error(self, message: str) -> None:
        self._emit("bold red", "✗", message)

    def info_verbose(self, message: str) -> None:
        if self.verbose:
            self.info(message)

    def warning_verbose(self, message: str) -> None:
        if self.verbose:
            self.warning(message)

    def request(self, method: str, params: Any = None) -> None:
        """Render an outbound JSON-RPC request."""
        if not self.json_rpc:
            return
        self.console.print(f"[dim]{_timestamp()}[/dim] [bold blue]→ REQUEST[/bold blue] {escape(method)}")
        if params is not None:
            self.console.print(pretty_json(params), markup=False)

    def response(self, method: str, result: Any = None) -> None:
        """Render an inbound JSON-RPC response."""
        if not self.json_rpc:
            return
        self.console.print(f"[dim]{_timestamp()}[/dim] [bold green]← RESPONSE[/bold green] {escape(method)}")
        if result is not None:
            self.console.print(pretty_json(result), markup=False)

    def incoming(self, method: str, params: Any = None) -> None:
        """Render a raw inbound notification frame."""
        if not self.json_rpc:
            return
        self.console.print(f"[dim]{_timestamp()}[/dim] [bold magenta]← NOTIFY[/bold magenta] {escape(method)}")
        if params:
            self.console.print(pretty_json(params), markup=False)

    def notification(self, message: str) -> None:
        """Render a notification summary, always prefixed so it stands out from command output."""
        self.console.print(
            f"[dim]{_timestamp()}[/dim] [bold magenta]{NOTIFICATION_PREFIX}[/bold magenta] {escape(message)}"
        )

    def keepalive(self, method: str) -> None:
        if self.verbose:
            self.console.print(f"[dim]{_timestamp()} ♥ keepalive {escape(method)}[/dim]")

    def server_log(self, level: str, data: Any, source: Optional[str] = None) -> None:
        """Render a ``notifications/message`` log entry sent by the server."""
        origin = f" ({source})" if source else ""
        text = data if isinstance(data, str) else json.dumps(data, default=str)
        self.console.print(
            f"[bold magenta]{NOTIFICATION_PREFIX}[/bold magenta] "
            f"[magenta]server log {escape(level)}{escape(origin)}:[/magenta] {escape(text)}"
        )
