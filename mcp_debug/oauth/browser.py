"""Browser-based OAuth authorization flow with callback server."""

import asyncio
import html
import webbrowser
from typing import Optional
from urllib.parse import urlparse

from aiohttp import web

from mcp_debug.errors import AuthError, AuthServerError, AuthTimeoutError, StateMismatchError

_PAGE = """
<html>
<head><title>{title}</title></head>
<body style="font-family: sans-serif; text-align: center; padding: 50px;">
    <h1>{heading}</h1>
    <p>{message}</p>
    <p>You can close this window and return to mcp-debug.</p>
</body>
</html>
"""


def _page(title: str, heading: str, message: str, status: int = 200) -> web.Response:
    return web.Response(
        text=_PAGE.format(title=title, heading=heading, message=html.escape(message)),
        content_type="text/html",
        status=status
    )


class CallbackServer:
    """Local HTTP server to receive OAuth callbacks."""

    def __init__(self, host: str, port: int, path: str, expected_state: str):
        """
        Initialize callback server.

        Args:
            host: Interface to bind (the redirect URL's host)
            port: Port to bind (the redirect URL's port)
            path: Callback path (e.g., /callback)
            expected_state: Expected state parameter for CSRF protection
        """
        self.host = host
        self.port = port
        self.path = path
        self.expected_state = expected_state
        self.code: Optional[str] = None
        self.error: Optional[AuthError] = None
        self.event = asyncio.Event()
        self._runner: Optional[web.AppRunner] = None

    async def callback_handler(self, request: web.Request) -> web.Response:
        """
        Handle OAuth callback request.

        Only the first callback counts; later ones get a notice page.

        Args:
            request: HTTP request from OAuth server redirect

        Returns:
            HTML response to display in browser
        """
        if self.event.is_set():
            return _page("Already Processed", "Already processed",
                         "This authorization request has already completed.", status=409)

        code = request.query.get("code")
        state = request.query.get("state")
        error = request.query.get("error")

        if error:
            description = request.query.get("error_description", "Unknown error")
            self.error = AuthServerError(f"authorization error: {error} - {description}")
            self.event.set()
            return _page("Authorization Failed", "❌ Authorization Failed", str(self.error), status=400)

        if state != self.expected_state:
            self.error = StateMismatchError("state mismatch in authorization callback (possible CSRF attack)")
            self.event.set()
            return _page("Authorization Failed", "❌ Security Error",
                         "Invalid state parameter. This could be a CSRF attack.", status=400)

        if not code:
            self.error = AuthServerError("no authorization code received")
            self.event.set()
            return _page("Authorization Failed", "❌ Authorization Failed",
                         "No authorization code received from server.", status=400)

        self.code = code
        self.event.set()
        return _page("Authorization Successful", "✅ Authorization Successful!",
                     "mcp-debug is now exchanging the authorization code for an access token.")

    async def start(self) -> None:
        """Bind the callback listener."""
        app = web.Application()
        app.router.add_get(self.path, self.callback_handler)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

    async def wait(self, timeout: float) -> str:
        """
        Wait for the OAuth redirect.

        Args:
            timeout: Seconds to wait before giving up

        Returns:
            Authorization code from callback

        Raises:
            AuthTimeoutError: If no callback arrives in time
            StateMismatchError: If the callback carries the wrong state
            AuthServerError: If the provider reported an error
        """
        try:
            async with asyncio.timeout(timeout):
                await self.event.wait()
        except TimeoutError:
            raise AuthTimeoutError(f"authorization timeout after {timeout:g}s") from None

        if self.error:
            raise self.error
        if not self.code:
            raise AuthServerError("no authorization code received")
        return self.code

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None


def validate_browser_url(url: str) -> None:
    """Only http(s) URLs may be handed to the system browser."""
    scheme = urlparse(url).scheme
    if scheme not in ("http", "https"):
        raise ValueError(f"invalid URL scheme for browser: {scheme} (only http/https allowed)")


def open_browser(url: str) -> bool:
    """
    Open the authorization URL in the default browser.

    Returns:
        True if a browser was launched
    """
    validate_browser_url(url)
    try:
        return webbrowser.open(url)
    except webbrowser.Error:
        return False
