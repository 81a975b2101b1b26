"""
Tools Framework

Named, schema-described capabilities that the LLM (and the scheduler and
subagents) can execute.

Usage:
    from tools import tool, ToolRegistry

    @tool
    def file_read(path: str, context) -> dict:
        '''Read a text file from the workspace.

        Args:
            path: File path relative to the workspace
        '''
        ...

    registry = ToolRegistry(workspace_path="./workspace")
    registry.register(file_read)
    outcome = await registry.execute("file_read", {"path": "notes.txt"})

The @tool decorator:
- Generates JSON schema from type hints
- Extracts descriptions from docstrings
- Injects a ToolContext when the function takes a ``context`` parameter

ToolRegistry.execute never raises for tool problems: unknown tools, invalid
parameters and exceptions all come back as a failed ToolOutcome.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Protocol, get_type_hints, runtime_checkable

logger = logging.getLogger(__name__)

TOOL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def json_serialize(obj):
    """JSON serializer for objects not serializable by default."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Path):
        return str(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def tool_error(error: str, fix: str = None, **extras) -> dict:
    """Standard failure payload returned by tool functions."""
    payload = {"error": error}
    if fix:
        payload["fix"] = fix
    payload.update(extras)
    return payload


# =============================================================================
# Tool Validation
# =============================================================================

class ToolValidationError(Exception):
    """Raised when a tool fails validation during registration."""
    pass


@runtime_checkable
class ToolLike(Protocol):
    """Protocol for duck-typed tool validation.

    Any object with these attributes can be converted to a Tool.
    """
    name: str
    fn: Callable
    schema: dict


# =============================================================================
# Core Types
# =============================================================================

@dataclass
class ToolContext:
    """What a running tool may reach besides its own parameters."""
    workspace: Path
    shell_timeout_seconds: int = 30
    registry: "ToolRegistry | None" = None
    services: dict[str, Any] = field(default_factory=dict)

    def resolve(self, path: str) -> Path:
        """Resolve ``path`` inside the workspace, rejecting escapes."""
        workspace = self.workspace.resolve()
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = workspace / candidate
        candidate = candidate.resolve()
        if candidate != workspace and workspace not in candidate.parents:
            raise PermissionError(f"Path '{path}' is outside the workspace")
        return candidate


class Tool:
    """A capability the agent can use."""

    def __init__(self, name: str, description: str, parameters: dict, fn: Callable):
        self.name = name
        self.fn = fn
        self.schema = {
            "name": name,
            "description": description,
            "input_schema": parameters,
        }

    @property
    def description(self) -> str:
        return self.schema["description"]

    @property
    def parameters(self) -> dict:
        return self.schema["input_schema"]

    def execute(self, params: dict, context: ToolContext):
        return self.fn(params, context)

    def __repr__(self) -> str:
        return f"Tool({self.name!r})"


@dataclass
class ToolOutcome:
    """Result of ToolRegistry.execute."""
    success: bool
    result: str = ""
    error: str | None = None
    duration_ms: int = 0

    @property
    def text(self) -> str:
        """What to show the LLM: the payload, or ``Error: ...``."""
        return self.result if self.success else f"Error: {self.error}"


# =============================================================================
# Decorator
# =============================================================================

def _python_type_to_json(py_type) -> dict:
    """Convert Python type hints to JSON schema types."""
    type_map = {
        str: {"type": "string"},
        int: {"type": "integer"},
        float: {"type": "number"},
        bool: {"type": "boolean"},
        list: {"type": "array"},
        dict: {"type": "object"},
    }

    # list[str], dict[str, Any] and friends
    origin = getattr(py_type, "__origin__", None)
    if origin in type_map:
        return dict(type_map[origin])

    if py_type in type_map:
        return dict(type_map[py_type])

    return {"type": "string"}


def _parse_docstring(docstring: str) -> tuple[str, dict[str, str]]:
    """
    Parse a docstring to extract description and argument descriptions.

    Returns:
        (main_description, {arg_name: arg_description})
    """
    if not docstring:
        return "", {}

    description_lines = []
    arg_descriptions = {}
    in_args = False
    current_arg = None

    for line in docstring.strip().split("\n"):
        stripped = line.strip()

        if stripped.lower() in ("args:", "arguments:", "parameters:"):
            in_args = True
            continue
        if stripped.lower() in ("returns:", "raises:", "examples:", "example:"):
            in_args = False
            continue

        if in_args:
            # "arg_name: description" or "arg_name (type): description"
            match = re.match(r"(\w+)(?:\s*\([^)]*\))?\s*:\s*(.+)", stripped)
            if match:
                current_arg = match.group(1)
                arg_descriptions[current_arg] = match.group(2).strip()
            elif current_arg and stripped:
                arg_descriptions[current_arg] += " " + stripped
        elif stripped:
            description_lines.append(stripped)

    return " ".join(description_lines), arg_descriptions


def tool(fn: Callable = None, *, name: str = None, description: str = None):
    """
    Decorator to convert a function into a Tool.

    Can be used as:
        @tool
        def my_func(...): ...

    Or with options:
        @tool(name="custom_name", description="Custom description")
        def my_func(...): ...

    The decorated name is bound to the resulting Tool instance.
    """
    def decorator(func: Callable) -> Tool:
        tool_name = name or func.__name__

        doc_desc, arg_descs = _parse_docstring(func.__doc__ or "")
        tool_description = description or doc_desc or f"Tool: {tool_name}"

        hints = get_type_hints(func) if hasattr(func, "__annotations__") else {}
        hints.pop("return", None)
        sig = inspect.signature(func)

        properties = {}
        required = []
        for param_name, param in sig.parameters.items():
            if param_name in ("context", "self"):
                continue
            prop = _python_type_to_json(hints.get(param_name, str))
            if param_name in arg_descs:
                prop["description"] = arg_descs[param_name]
            properties[param_name] = prop
            if param.default is inspect.Parameter.empty:
                required.append(param_name)

        schema = {"type": "object", "properties": properties}
        if required:
            schema["required"] = required

        accepted = set(sig.parameters) - {"context"}
        wants_context = "context" in sig.parameters

        if inspect.iscoroutinefunction(func):
            async def wrapper(params: dict, context: ToolContext):
                kwargs = {k: v for k, v in params.items() if k in accepted}
                if wants_context:
                    return await func(context=context, **kwargs)
                return await func(**kwargs)
        else:
            def wrapper(params: dict, context: ToolContext):
                kwargs = {k: v for k, v in params.items() if k in accepted}
                if wants_context:
                    return func(context=context, **kwargs)
                return func(**kwargs)

        built = Tool(name=tool_name, description=tool_description, parameters=schema, fn=wrapper)
        built.original_fn = func
        return built

    if fn is not None:
        return decorator(fn)
    return decorator


# =============================================================================
# Parameter Validation
# =============================================================================

_JSON_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
    "null": (type(None),),
}


def _type_matches(value: Any, expected: str | list) -> bool:
    if isinstance(expected, list):
        return any(_type_matches(value, e) for e in expected)
    python_types = _JSON_TYPES.get(expected)
    if python_types is None:
        return True
    # bool is an int subclass; JSON keeps them apart
    if expected in ("integer", "number") and isinstance(value, bool):
        return False
    return isinstance(value, python_types)


def validate_parameters(schema: dict, parameters: Any) -> str | None:
    """Check ``parameters`` against a tool's input schema.

    Returns a human-readable problem, or None when the parameters are valid.
    Only required properties, primitive types and enums are checked.
    """
    if not isinstance(parameters, dict):
        return f"Parameters must be an object, got {type(parameters).__name__}"

    for required in schema.get("required", []):
        if required not in parameters or parameters[required] is None:
            return f"Required parameter '{required}' is missing"

    properties = schema.get("properties", {})
    for key, value in parameters.items():
        spec = properties.get(key)
        if not spec or value is None:
            continue
        expected = spec.get("type")
        if expected and not _type_matches(value, expected):
            return f"Parameter '{key}' must be of type {expected}"
        if "enum" in spec and value not in spec["enum"]:
            return f"Parameter '{key}' must be one of {spec['enum']}"
    return None


def _render_result(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, default=json_serialize)
    except (TypeError, ValueError):
        return str(result)


# =============================================================================
# Registry
# =============================================================================

class ToolRegistry:
    """Validates and executes named tools. Safe to share between tasks."""

    def __init__(
        self,
        workspace_path: str | Path = ".",
        allowed_tools: list[str] | None = None,
        shell_timeout_seconds: int = 30,
    ):
        self.workspace_path = Path(workspace_path)
        self.allowed_tools = {n.lower() for n in allowed_tools} if allowed_tools else None
        self.context = ToolContext(
            workspace=self.workspace_path,
            shell_timeout_seconds=shell_timeout_seconds,
            registry=self,
        )
        self._tools: dict[str, Tool] = {}

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, obj: Tool | ToolLike) -> bool:
        """Register a tool.

        Returns False when the tool is filtered out by ``allowed_tools``.

        Raises:
            ToolValidationError: malformed tool or duplicate name.
        """
        validated = self._validate_and_convert(obj)
        key = validated.name.lower()

        if self.allowed_tools is not None and key not in self.allowed_tools:
            logger.info("Tool '%s' not in allowed_tools, skipping", validated.name)
            return False
        if key in self._tools:
            raise ToolValidationError(f"Tool '{validated.name}' is already registered")

        self._tools[key] = validated
        logger.debug("Registered tool %s", validated.name)
        return True

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name.lower(), None) is not None

    def _validate_and_convert(self, obj) -> Tool:
        """Validate and convert an object to a proper Tool instance."""
        if isinstance(obj, Tool):
            candidate = obj
        elif isinstance(obj, ToolLike):
            schema = obj.schema
            if not isinstance(schema, dict):
                raise ToolValidationError(
                    f"Tool '{getattr(obj, 'name', '?')}' has invalid schema: expected dict, got {type(schema).__name__}"
                )
            if "input_schema" not in schema:
                raise ToolValidationError(
                    f"Tool '{obj.name}' schema missing 'input_schema'. Got: {list(schema.keys())}"
                )
            candidate = Tool(
                name=obj.name,
                description=schema.get("description", f"Tool: {obj.name}"),
                parameters=schema["input_schema"],
                fn=obj.fn,
            )
        else:
            missing = [attr for attr in ("name", "fn", "schema") if not hasattr(obj, attr)]
            raise ToolValidationError(
                f"Invalid tool object (type: {type(obj).__name__}). "
                f"Missing required attributes: {missing or 'none, but types are wrong'}."
            )

        if not isinstance(candidate.name, str) or not TOOL_NAME_PATTERN.match(candidate.name):
            raise ToolValidationError(f"Invalid tool name: {candidate.name!r}")
        if not callable(candidate.fn):
            raise ToolValidationError(f"Tool '{candidate.name}' fn is not callable")
        if candidate.parameters.get("type", "object") != "object":
            raise ToolValidationError(f"Tool '{candidate.name}' input_schema must describe an object")
        return candidate

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name.lower())

    def all(self) -> list[Tool]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return [t.name for t in self._tools.values()]

    def definitions(self) -> list[dict]:
        """Name, description and parameter schema of every tool."""
        return [dict(t.schema) for t in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def add_service(self, name: str, service: Any):
        """Expose a shared object (e.g. the subagent manager) to tools."""
        self.context.services[name] = service

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(self, name: str, parameters: Any) -> ToolOutcome:
        """Run a tool. Never raises except for cancellation."""
        start = time.time()

        found = self.get(name) if isinstance(name, str) else None
        if found is None:
            return ToolOutcome(success=False, error=f"Tool '{name}' not found.")

        if parameters is None:
            parameters = {}
        problem = validate_parameters(found.parameters, parameters)
        if problem:
            logger.info("Rejected call to %s: %s", found.name, problem)
            return ToolOutcome(success=False, error=problem)

        try:
            if inspect.iscoroutinefunction(found.fn):
                result = await found.fn(parameters, self.context)
            else:
                # Sync tools run in the thread pool so the event loop stays free
                result = await asyncio.to_thread(found.execute, parameters, self.context)
                if inspect.isawaitable(result):
                    result = await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Tool %s raised: %s", found.name, e)
            return ToolOutcome(
                success=False,
                error=f"Tool execution failed: {e}",
                duration_ms=int((time.time() - start) * 1000),
            )

        duration_ms = int((time.time() - start) * 1000)
        if isinstance(result, dict) and result.get("error"):
            return ToolOutcome(success=False, error=str(result["error"]), duration_ms=duration_ms)
        return ToolOutcome(success=True, result=_render_result(result), duration_ms=duration_ms)
