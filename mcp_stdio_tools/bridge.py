"""
Bridge between MCP tool servers and LangChain.

This module converts tools discovered by a ToolServerManager into
LangChain StructuredTools.

Usage:
    from mcp_stdio_tools.bridge import mcp_to_langchain_tool, langchain_tools

    # Single tool
    lc_tool = mcp_to_langchain_tool(manager, "calculator", "calculate_sum")

    # All tools from all running servers
    tools = langchain_tools(manager)
"""

from __future__ import annotations

import json
from typing import Any, Optional, Union

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, create_model

from mcp_stdio_tools.manager import ToolServerManager

_JSON_TO_PYTHON = {
    "number": Union[int, float],
    "integer": int,
    "string": str,
    "boolean": bool,
    "array": list,
    "object": dict,
}


def args_model(tool_name: str, input_schema: dict[str, Any]) -> type[BaseModel]:
    """Build a pydantic model mirroring an MCP ``inputSchema``."""
    properties = input_schema.get("properties") or {}
    required = set(input_schema.get("required") or [])
    fields: dict[str, Any] = {}
    for name, prop in properties.items():
        python_type = _JSON_TO_PYTHON.get(prop.get("type"), Any)
        if name in required:
            fields[name] = (python_type, ...)
        else:
            fields[name] = (Optional[python_type], None)
    model_name = "".join(part.capitalize() for part in tool_name.replace("-", "_").split("_"))
    return create_model(f"{model_name or 'Tool'}Args", **fields)


def content_text(result: dict[str, Any]) -> str:
    """Join the text items of a tool envelope; fall back to JSON."""
    content = result.get("content") if isinstance(result, dict) else None
    if isinstance(content, list):
        texts = [item.get("text", "") for item in content
                 if isinstance(item, dict) and item.get("type") == "text"]
        if texts and len(texts) == len(content):
            return "\n".join(texts)
    return json.dumps(result, indent=2)


def mcp_to_langchain_tool(
    manager: ToolServerManager,
    server_id: str,
    tool_name: str,
    description_override: str | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that wraps an MCP tool server call.

    The returned tool, when invoked by an agent, sends a tools/call request
    to the specified tool server via stdio and returns the text result.

    Args:
        manager: The ToolServerManager managing the server
        server_id: Which server the tool lives on
        tool_name: The tool name (as registered on the server)
        description_override: Optional override for the tool description

    Returns:
        A LangChain StructuredTool that proxies calls to the MCP server.
    """
    # Find the tool definition from discovered tools
    tools = manager.list_tools(server_id)
    definition = next((t for t in tools if t["name"] == tool_name), None)

    if definition:
        description = description_override or definition.get("description") or tool_name
        input_schema = definition.get("inputSchema") or {}
    else:
        description = description_override or f"MCP tool: {server_id}/{tool_name}"
        input_schema = {}

    def _call_mcp(**kwargs: Any) -> str:
        """Proxy call to MCP tool server."""
        arguments = {k: v for k, v in kwargs.items() if v is not None}
        try:
            result = manager.call(server_id, tool_name, arguments)
        except Exception as e:
            return f"Error calling {server_id}/{tool_name}: {e}"
        return content_text(result)

    return StructuredTool.from_function(
        func=_call_mcp,
        name=tool_name,
        description=description,
        args_schema=args_model(tool_name, input_schema),
    )


def langchain_tools(
    manager: ToolServerManager,
    server_ids: list[str] | None = None,
) -> list[StructuredTool]:
    """Wrap every discovered tool of every running server (or of ``server_ids``)."""
    wrapped = []
    for server_id, running in manager.list_servers().items():
        if not running or (server_ids is not None and server_id not in server_ids):
            continue
        for definition in manager.list_tools(server_id):
            wrapped.append(mcp_to_langchain_tool(manager, server_id, definition["name"]))
    return wrapped


def describe_tool(definition: dict[str, Any]) -> str:
    """Generate prompt instructions from an MCP tool definition."""
    name = definition.get("name", "unknown")
    description = definition.get("description", "")
    schema = definition.get("inputSchema") or {}
    params = schema.get("properties", {})
    required = set(schema.get("required") or [])

    lines = [f"## Tool: {name}", description, ""]
    if params:
        lines.append("Parameters:")
        for pname, pinfo in params.items():
            ptype = pinfo.get("type", "any")
            marker = "" if pname in required else ", optional"
            pdesc = pinfo.get("description", "")
            lines.append(f"  - {pname} ({ptype}{marker}): {pdesc}")

    return "\n".join(lines)
