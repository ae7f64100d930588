"""OAuth 2.1 support for protected MCP endpoints"""

from mcp_debug.oauth.manager import OAuthManager
from mcp_debug.oauth.models import Token

__all__ = ["OAuthManager", "Token"]
