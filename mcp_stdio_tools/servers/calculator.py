"""
Calculator MCP Tool Server.

A simple reference implementation showing how to build an MCP tool server.
Runs as a subprocess, communicates via stdin/stdout JSON-RPC.

Launch:
    python -m mcp_stdio_tools.servers.calculator

Test manually:
    echo '{"jsonrpc":"2.0","method":"tools/list","params":{},"id":1}' | python -m mcp_stdio_tools.servers.calculator
    echo '{"jsonrpc":"2.0","method":"tools/call","params":{"name":"calculate_sum","arguments":{"a":5,"b":3}},"id":2}' | python -m mcp_stdio_tools.servers.calculator
"""

import math

from mcp_stdio_tools.config import configure_logging
from mcp_stdio_tools.server import McpServer
from mcp_stdio_tools.tools import ToolHandler, param


def calculate_sum(a, b):
    return f"The sum of {a} and {b} is {a + b}"


class CalculateTool(ToolHandler):
    name = "calculate"
    description = "Evaluate a mathematical expression. Supports +, -, *, /, **, sqrt(), log(), sin(), cos(), pi, e."
    parameters = {
        "expression": {
            "type": "string",
            "description": "Mathematical expression to evaluate (e.g., 'sqrt(2) * pi / 3')",
        },
    }

    # Allowed names in eval scope (safe math only)
    _safe_names = {
        "sqrt": math.sqrt,
        "log": math.log,
        "log10": math.log10,
        "sin": math.sin,
        "cos": math.cos,
        "tan": math.tan,
        "abs": abs,
        "round": round,
        "pi": math.pi,
        "e": math.e,
        "inf": math.inf,
    }

    def handle(self, expression: str = ""):
        if not expression:
            raise ValueError("No expression provided")
        # Restricted eval with only math functions; errors become isError results
        result = eval(expression, {"__builtins__": {}}, self._safe_names)
        return f"{expression} = {result}"


class ConvertUnitsTool(ToolHandler):
    name = "convert_units"
    description = "Convert between common units (length, weight, temperature)."
    parameters = {
        "value": {"type": "number", "description": "The value to convert"},
        "from_unit": {"type": "string", "description": "Source unit (e.g., 'km', 'lb', 'celsius')"},
        "to_unit": {"type": "string", "description": "Target unit (e.g., 'miles', 'kg', 'fahrenheit')"},
    }

    _conversions = {
        ("km", "miles"): lambda v: v * 0.621371,
        ("miles", "km"): lambda v: v * 1.60934,
        ("kg", "lb"): lambda v: v * 2.20462,
        ("lb", "kg"): lambda v: v * 0.453592,
        ("celsius", "fahrenheit"): lambda v: v * 9 / 5 + 32,
        ("fahrenheit", "celsius"): lambda v: (v - 32) * 5 / 9,
        ("m", "ft"): lambda v: v * 3.28084,
        ("ft", "m"): lambda v: v * 0.3048,
    }

    def handle(self, value: float, from_unit: str, to_unit: str):
        key = (from_unit.lower(), to_unit.lower())
        converter = self._conversions.get(key)
        if not converter:
            available = [f"{f} -> {t}" for f, t in self._conversions]
            raise ValueError(f"Unknown conversion: {key[0]} -> {key[1]}. Available: {available}")
        return f"{value} {key[0]} = {round(converter(value), 6)} {key[1]}"


def build_server() -> McpServer:
    server = McpServer(name="calculator", version="1.0.0")
    server.tool(
        description="Add two numbers together",
        parameters=[param("a", "number"), param("b", "number")],
    )(calculate_sum)
    server.register(CalculateTool())
    server.register(ConvertUnitsTool())
    return server


if __name__ == "__main__":
    configure_logging()
    build_server().run()
