"""Command-line entry point for mcp-debug."""

import asyncio
import logging
import signal
import sys
from typing import Any

import click
from click.core import ParameterSource
from rich.console import Console
from rich.logging import RichHandler

from mcp_debug.client.agent import AgentClient
from mcp_debug.config import (
    CLIENT_TRANSPORTS,
    DEFAULT_AUTH_TIMEOUT,
    DEFAULT_REDIRECT_URL,
    DEFAULT_STEP_UP_RETRIES,
    SERVER_TRANSPORTS,
    AgentConfig,
    Endpoint,
    OAuthConfig,
    get_settings,
)
from mcp_debug.errors import MCPDebugError
from mcp_debug.logger import Logger
from mcp_debug.repl import REPL
from mcp_debug.server import PassthroughServer

MODE_NORMAL = "normal"
MODE_REPL = "repl"
MODE_SERVER = "server"


def configure_logging(verbose: bool) -> None:
    """Route library logging through rich on stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)],
        force=True
    )
    if not verbose:
        logging.getLogger("httpx").setLevel(logging.WARNING)


def build_config(
    endpoint: str,
    transport: str,
    verbose: bool = False,
    json_rpc: bool = False,
    oauth: bool = False,
    oauth_client_id: str = "",
    oauth_client_secret: str = "",
    oauth_scopes: str = "",
    oauth_redirect_url: str = DEFAULT_REDIRECT_URL,
    no_oauth_pkce: bool = False,
    oauth_timeout: float = DEFAULT_AUTH_TIMEOUT,
    oauth_oidc: bool = False,
    oauth_registration_token: str = "",
    oauth_resource_uri: str = "",
    oauth_skip_resource_param: bool = False,
    oauth_disable_step_up: bool = False,
    oauth_step_up_max_retries: int = DEFAULT_STEP_UP_RETRIES,
    secret_from_argument: bool = False
) -> AgentConfig:
    """Assemble the immutable agent configuration from command-line values."""
    return AgentConfig(
        endpoint=Endpoint(url=endpoint, transport=transport),
        oauth=OAuthConfig(
            enabled=oauth,
            client_id=oauth_client_id,
            client_secret=oauth_client_secret,
            scopes=oauth_scopes,
            redirect_url=oauth_redirect_url,
            use_pkce=not no_oauth_pkce,
            authorization_timeout=oauth_timeout,
            use_oidc=oauth_oidc,
            registration_token=oauth_registration_token,
            resource_uri=oauth_resource_uri,
            skip_resource_param=oauth_skip_resource_param,
            step_up=not oauth_disable_step_up,
            step_up_max_retries=oauth_step_up_max_retries,
            secret_from_argument=secret_from_argument
        ),
        verbose=verbose,
        json_rpc=json_rpc
    )


async def run_mode(
    mode: str,
    config: AgentConfig,
    logger: Logger,
    timeout: float,
    server_transport: str,
    listen_addr: str
) -> None:
    client = AgentClient(config, logger)

    if mode == MODE_SERVER:
        await PassthroughServer(client, logger, server_transport, listen_addr).start()
        return

    try:
        await client.run()
        if mode == MODE_REPL:
            await REPL(client, logger).run()
            return

        try:
            async with asyncio.timeout(timeout):
                await client.listen()
        except TimeoutError:
            logger.info(f"Timeout reached after {timeout:g}s, shutting down")
    finally:
        await client.close()


async def run_until_signalled(coro, logger: Logger) -> None:
    """
    Run ``coro`` as the root task; SIGINT/SIGTERM cancel it exactly once.

    A signal-driven shutdown is a normal exit.
    """
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(coro)
    interrupted = False

    def on_signal() -> None:
        nonlocal interrupted
        if interrupted:
            return
        interrupted = True
        logger.info("Received interrupt signal, shutting down...")
        task.cancel()

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, on_signal)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            pass

    try:
        await task
    except asyncio.CancelledError:
        if not interrupted:
            raise
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def _setting(name: str):
    return lambda: getattr(get_settings(), name)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--endpoint", default=_setting("MCP_DEBUG_ENDPOINT"), show_default="http://localhost:8090/mcp",
              help="MCP endpoint URL (or the command line to launch for stdio)")
@click.option("--transport", type=click.Choice(CLIENT_TRANSPORTS), default=_setting("MCP_DEBUG_TRANSPORT"),
              show_default="streamable-http", help="Transport used to reach the MCP server")
@click.option("--server-transport", type=click.Choice(SERVER_TRANSPORTS),
              default=_setting("MCP_DEBUG_SERVER_TRANSPORT"), show_default="stdio",
              help="Transport for --mcp-server mode")
@click.option("--listen-addr", default=_setting("MCP_DEBUG_LISTEN_ADDR"), show_default=":8899",
              help="Listen address for --mcp-server with streamable-http")
@click.option("--timeout", type=float, default=_setting("MCP_DEBUG_TIMEOUT"), show_default="300",
              help="Seconds to listen for notifications in normal mode")
@click.option("--verbose", "-v", is_flag=True, default=_setting("MCP_DEBUG_VERBOSE"),
              help="Show keepalives and debug details")
@click.option("--no-color", is_flag=True, default=_setting("MCP_DEBUG_NO_COLOR"), help="Disable colored output")
@click.option("--json-rpc", is_flag=True, default=_setting("MCP_DEBUG_JSON_RPC"),
              help="Log full JSON-RPC requests, responses and notifications")
@click.option("--repl", is_flag=True, help="Start the interactive console")
@click.option("--mcp-server", is_flag=True, help="Run as an MCP server exposing the upstream server's capabilities")
@click.option("--oauth", is_flag=True, help="Authenticate with OAuth 2.1 before connecting")
@click.option("--oauth-client-id", default=_setting("OAUTH_CLIENT_ID"),
              help="OAuth client ID (dynamic registration is used when empty)")
@click.option("--oauth-client-secret", default=_setting("OAUTH_CLIENT_SECRET"),
              help="OAuth client secret (prefer the OAUTH_CLIENT_SECRET environment variable)")
@click.option("--oauth-scopes", default="", help="Comma- or space-separated scopes to request")
@click.option("--oauth-redirect-url", default=_setting("OAUTH_REDIRECT_URL"),
              show_default="http://localhost:8765/callback", help="OAuth redirect URL")
@click.option("--no-oauth-pkce", is_flag=True, help="Disable PKCE (not recommended)")
@click.option("--oauth-timeout", type=float, default=DEFAULT_AUTH_TIMEOUT, show_default=True,
              help="Seconds to wait for the authorization callback")
@click.option("--oauth-oidc", is_flag=True, help="Request an ID token and validate its nonce")
@click.option("--oauth-registration-token", default=_setting("OAUTH_REGISTRATION_TOKEN"),
              help="Initial access token for protected dynamic client registration")
@click.option("--oauth-resource-uri", default="", help="Override the RFC 8707 resource parameter")
@click.option("--oauth-skip-resource-param", is_flag=True, help="Do not send the RFC 8707 resource parameter")
@click.option("--oauth-disable-step-up", is_flag=True,
              help="Do not re-authorize when the server answers 403 insufficient_scope")
@click.option("--oauth-step-up-max-retries", type=int, default=DEFAULT_STEP_UP_RETRIES, show_default=True,
              help="Step-up authorizations allowed per request")
@click.pass_context
def main(ctx: click.Context, **options: Any) -> None:
    """Debug and inspect MCP servers."""
    repl, mcp_server = options.pop("repl"), options.pop("mcp_server")
    if repl and mcp_server:
        raise click.UsageError("--repl and --mcp-server cannot be used together")
    mode = MODE_REPL if repl else MODE_SERVER if mcp_server else MODE_NORMAL

    timeout = options.pop("timeout")
    if timeout <= 0:
        raise click.BadParameter("must be positive", param_hint="--timeout")
    server_transport = options.pop("server_transport")
    listen_addr = options.pop("listen_addr")
    no_color = options.pop("no_color")
    secret_source = ctx.get_parameter_source("oauth_client_secret")

    configure_logging(options["verbose"])
    logger = Logger(
        verbose=options["verbose"],
        color=not no_color,
        json_rpc=options["json_rpc"],
        # stdout carries the protocol in stdio server mode
        stderr=mode == MODE_SERVER and server_transport == "stdio"
    )

    try:
        config = build_config(
            secret_from_argument=secret_source is ParameterSource.COMMANDLINE,
            **options
        )
        asyncio.run(run_until_signalled(
            run_mode(mode, config, logger, timeout, server_transport, listen_addr),
            logger
        ))
    except MCPDebugError as e:
        logger.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
