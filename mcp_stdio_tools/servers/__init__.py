"""Reference tool servers, runnable with ``python -m mcp_stdio_tools.servers.<name>``."""
