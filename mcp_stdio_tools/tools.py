"""
Tool declarations, schema derivation and result normalization.

Three ways to declare a tool, all ending up as a Tool in a ToolRegistry:

    registry = ToolRegistry()

    # 1. Decorator
    @registry.tool(
        description="Add two numbers together",
        parameters=[param("a", "number"), param("b", "number")],
    )
    def calculate_sum(a, b):
        return f"The sum of {a} and {b} is {a + b}"

    # 2. Class-based handler
    class EchoTool(ToolHandler):
        name = "echo"
        description = "Echo back the input message"
        parameters = {"message": {"type": str, "description": "Text to echo"}}

        def handle(self, message):
            return f"Echo: {message}"

    registry.register(EchoTool())

    # 3. Explicit Tool object
    registry.add(Tool("add", "Add", {"a": int, "b": int}, lambda a, b: a + b,
                      convention=POSITIONAL))

Parameter schemas are declared, never inferred from the callable: each
parameter names its JSON type, whether it is required, and a description.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Mapping, Union

from mcp_stdio_tools.errors import UnknownToolError

logger = logging.getLogger(__name__)

KEYWORDS = "keywords"
POSITIONAL = "positional"

JSON_TYPES = ("number", "integer", "string", "boolean", "array", "object", "null")

_PYTHON_TYPES = {
    int: "number",
    float: "number",
    str: "string",
    bool: "boolean",
    list: "array",
    tuple: "array",
    dict: "object",
    type(None): "null",
}

_TYPE_NAMES = {
    "int": "number",
    "float": "number",
    "str": "string",
    "bool": "boolean",
    "list": "array",
    "tuple": "array",
    "dict": "object",
}


def json_type(type_tag: Any) -> str:
    """Map a declared type tag (Python type or name) to a JSON Schema type."""
    if isinstance(type_tag, type):
        if type_tag in _PYTHON_TYPES:
            return _PYTHON_TYPES[type_tag]
        raise ValueError(f"No JSON type for {type_tag.__name__}")
    name = str(type_tag)
    if name in JSON_TYPES:
        return name
    if name.lower() in _TYPE_NAMES:
        return _TYPE_NAMES[name.lower()]
    raise ValueError(f"Unknown parameter type: {type_tag!r}")


@dataclass(frozen=True)
class ToolParameter:
    """One declared tool parameter."""

    name: str
    type: str = "string"
    required: bool = True
    description: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "type", json_type(self.type))

    def to_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.type}
        if self.description:
            schema["description"] = self.description
        return schema


def param(
    name: str,
    type: Any = "string",
    required: bool = True,
    description: str | None = None,
) -> ToolParameter:
    """Shorthand builder for ToolParameter."""
    return ToolParameter(name=name, type=type, required=required, description=description)


ParameterSpec = Union[Iterable[ToolParameter], Mapping[str, Any], None]


def parse_parameters(parameters: ParameterSpec) -> tuple[ToolParameter, ...]:
    """
    Normalize declared parameters into ToolParameter objects.

    Accepts a sequence of ToolParameter, or the compact mapping form
    ``{"a": {"type": int, "description": "..."}, "b": int}``. In the mapping
    form a parameter is required unless it says ``"required": False`` or
    carries a ``"default"``.
    """
    if not parameters:
        return ()
    if isinstance(parameters, Mapping):
        parsed = []
        for name, declaration in parameters.items():
            if isinstance(declaration, ToolParameter):
                parsed.append(declaration)
            elif isinstance(declaration, Mapping):
                required = declaration.get("required", "default" not in declaration)
                parsed.append(ToolParameter(
                    name=name,
                    type=declaration.get("type", "string"),
                    required=bool(required),
                    description=declaration.get("description"),
                ))
            else:
                parsed.append(ToolParameter(name=name, type=declaration))
        return tuple(parsed)
    return tuple(parameters)


def normalize_tool_result(result: Any) -> dict[str, Any]:
    """Coerce whatever a tool body returned into a tool envelope."""
    if isinstance(result, dict) and isinstance(result.get("content"), list):
        return result
    if isinstance(result, dict) and result.get("isError"):
        return result
    if isinstance(result, str):
        return {"content": [{"type": "text", "text": result}]}
    if isinstance(result, (list, tuple)):
        return {"content": list(result)}
    return {"content": [{"type": "text", "text": str(result)}]}


def error_result(error: BaseException) -> dict[str, Any]:
    return {"isError": True, "content": [{"type": "text", "text": f"Error: {error}"}]}


class Tool:
    """
    A named, described, invocable tool.

    ``convention`` selects how arguments reach the body:
    KEYWORDS calls ``body(**arguments)``; POSITIONAL calls
    ``body(*values)`` with values taken in declaration order (or the list
    itself when arguments already is a list).
    """

    def __init__(
        self,
        name: str,
        description: str,
        parameters: ParameterSpec,
        body: Callable[..., Any],
        convention: str = KEYWORDS,
    ):
        if not name:
            raise ValueError("Tool name must not be empty")
        if convention not in (KEYWORDS, POSITIONAL):
            raise ValueError(f"Unknown calling convention: {convention!r}")
        self.name = str(name)
        self.description = description or ""
        self.parameters = parse_parameters(parameters)
        self.body = body
        self.convention = convention
        self.input_schema = self._build_schema()

    def __repr__(self) -> str:
        return f"Tool(name={self.name!r}, convention={self.convention!r})"

    def _build_schema(self) -> dict[str, Any]:
        names = [p.name for p in self.parameters]
        if len(set(names)) != len(names):
            raise ValueError(f"Tool {self.name!r} declares duplicate parameters")
        return {
            "type": "object",
            "properties": {p.name: p.to_schema() for p in self.parameters},
            "required": [p.name for p in self.parameters if p.required],
        }

    def definition(self) -> dict[str, Any]:
        """Wire-level definition as listed by tools/list."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }

    def invoke(self, arguments: Mapping[str, Any] | list | tuple | None = None) -> Any:
        """Call the body with the raw arguments. Exceptions propagate."""
        if arguments is None:
            arguments = {}
        if self.convention == POSITIONAL:
            if isinstance(arguments, Mapping):
                values = self._positional_values(arguments)
            else:
                values = list(arguments)
            return self.body(*values)
        if not isinstance(arguments, Mapping):
            raise TypeError(f"Tool {self.name!r} expects named arguments")
        return self.body(**arguments)

    def _positional_values(self, arguments: Mapping[str, Any]) -> list[Any]:
        # Values stop at the first omitted parameter; later ones cannot be
        # passed positionally without landing in its slot.
        values: list[Any] = []
        missing = None
        for p in self.parameters:
            if p.name not in arguments:
                missing = missing or p.name
            elif missing is not None:
                raise TypeError(
                    f"Tool {self.name!r} takes positional arguments: "
                    f"'{p.name}' given but '{missing}' omitted"
                )
            else:
                values.append(arguments[p.name])
        return values

    def call(self, arguments: Mapping[str, Any] | list | tuple | None = None) -> dict[str, Any]:
        """Invoke the body and return a tool envelope; never raises."""
        try:
            return normalize_tool_result(self.invoke(arguments))
        except Exception as e:
            logger.warning(f"Tool {self.name} failed: {e}")
            return error_result(e)


class ToolHandler(ABC):
    """
    Base class for a class-based tool implementation.

    Subclasses define what a tool does. The server handles transport.
    """

    # Subclasses must set these
    name: str = ""
    description: str = ""
    parameters: Mapping[str, Any] | tuple[ToolParameter, ...] = {}

    @abstractmethod
    def handle(self, **arguments: Any) -> Any:
        """
        Execute the tool with the given parameters.

        Returns:
            A tool envelope, a string, a list of content items,
            or any value (stringified into a text item).
        """
        ...

    def as_tool(self) -> Tool:
        if not self.name:
            raise ValueError(f"ToolHandler {self.__class__.__name__} has no name")
        return Tool(self.name, self.description, self.parameters, self.handle)


class ToolRegistry:
    """Ordered, per-instance collection of tools with unique names."""

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.add(tool)

    def add(self, tool: Tool) -> Tool:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        logger.info(f"Registered tool: {tool.name}")
        return tool

    def register(self, handler: ToolHandler) -> Tool:
        """Register a class-based tool handler."""
        return self.add(handler.as_tool())

    def tool(
        self,
        name: str | None = None,
        description: str | None = None,
        parameters: ParameterSpec = None,
        convention: str = KEYWORDS,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator registering a function as a tool. Returns it unchanged."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            doc = (func.__doc__ or "").strip()
            self.add(Tool(
                name=name or func.__name__,
                description=description if description is not None else doc,
                parameters=parameters,
                body=func,
                convention=convention,
            ))
            return func

        return decorator

    def get(self, name: str) -> Tool:
        try:
            return self._tools[name]
        except (KeyError, TypeError):
            raise UnknownToolError(
                f"Unknown tool: '{name}'. Available: {self.names()}"
            ) from None

    def call(self, name: str, arguments: Any = None) -> dict[str, Any]:
        return self.get(name).call(arguments)

    def definitions(self) -> list[dict[str, Any]]:
        return [tool.definition() for tool in self._tools.values()]

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)
