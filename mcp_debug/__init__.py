"""mcp-debug: a debugging agent for Model Context Protocol servers."""

__version__ = "1.0.0"
