"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import BaseModel, model_validator

from ideacode.exceptions import ToolError, ToolExecutionError, ToolNotFoundError
from ideacode.logging import get_logger

log = get_logger(__name__)

ERROR_MARKER = "error:"

_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


def normalize_tool_name(value: str) -> str:
    """Normalize tool names for lookups and policy comparisons."""
    return str(value or "").strip().lower()


def format_tool_error(message: str) -> str:
    """Prefix a failure message with the error marker."""
    text = str(message or "").strip() or "Tool execution failed"
    if text.startswith(ERROR_MARKER):
        return text
    return f"{ERROR_MARKER} {text}"


def is_error_result(content: str) -> bool:
    return str(content or "").startswith(ERROR_MARKER)


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    def to_text(self) -> str:
        """Render the result as the string handed back to the model."""
        if self.success:
            return self.content
        return format_tool_error(self.error or "")


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success status and content
        """
        pass

    async def close(self) -> None:
        """Release resources held by the tool."""
        return None

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for LLM.

        Returns:
            Function-style definition
        """
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate_arguments(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Validate and lightly coerce tool arguments against the schema.

        Integer fields accept integral floats and digit strings, since models
        often send ``"10"`` or ``10.0``. Unknown keys pass through untouched.

        Raises:
            ToolExecutionError if a required argument is missing or a value has
            the wrong type
        """
        properties = self.parameters.get("properties", {}) or {}
        validated = dict(arguments)
        for field_name in self.parameters.get("required", []) or []:
            if validated.get(field_name) is None:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field_name}",
                )

        for key, value in list(validated.items()):
            spec = properties.get(key)
            if not isinstance(spec, dict) or value is None:
                continue
            expected = str(spec.get("type", "")).strip()
            if expected == "integer":
                if isinstance(value, float) and value.is_integer():
                    value = int(value)
                elif isinstance(value, str) and value.strip().lstrip("-").isdigit():
                    value = int(value.strip())
            elif expected == "boolean" and isinstance(value, str):
                lowered = value.strip().lower()
                if lowered in {"true", "false"}:
                    value = lowered == "true"
            accepted = _JSON_TYPES.get(expected)
            if accepted is None:
                validated[key] = value
                continue
            # bool is an int subclass; keep it out of numeric fields.
            if isinstance(value, bool) and expected in {"integer", "number"}:
                accepted = ()
            if not isinstance(value, accepted):
                raise ToolExecutionError(
                    self.name,
                    f"Argument '{key}' must be of type {expected}",
                )
            validated[key] = value
        return validated


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, base_path: Path | str | None = None):
        self._tools: dict[str, Tool] = {}
        self._runtime_base_path = Path.cwd()
        self.set_runtime_base_path(base_path or Path.cwd())

    def set_runtime_base_path(self, base_path: Path | str) -> None:
        """Set the working directory tools resolve relative paths against."""
        self._runtime_base_path = Path(base_path).expanduser().resolve()

    @property
    def runtime_base_path(self) -> Path:
        return self._runtime_base_path

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[normalize_tool_name(tool.name)] = tool

    def unregister(self, name: str) -> Tool | None:
        return self._tools.pop(normalize_tool_name(name), None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return normalize_tool_name(name) in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        key = normalize_tool_name(name)
        if key not in self._tools:
            raise ToolNotFoundError(key)
        return self._tools[key]

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return [tool.name for tool in self._tools.values()]

    def get_definitions(self) -> list[dict[str, Any]]:
        """Get all tool definitions for LLM."""
        return [tool.get_definition() for tool in self._tools.values()]

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled tool task raised", error=str(e))

    async def execute(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments: Tool arguments

        Returns:
            ToolResult from execution

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails or times out
        """
        tool = self.get(name)
        validated = tool.validate_arguments(arguments)

        execute_task: asyncio.Task[ToolResult] | None = None
        try:
            log.info("Executing tool", tool=tool.name, args=validated)
            timeout_seconds = max(1.0, float(getattr(tool, "timeout_seconds", 30.0) or 30.0))

            execute_task = asyncio.create_task(
                tool.execute(**validated, _runtime_base_path=self.runtime_base_path)
            )
            done, _ = await asyncio.wait({execute_task}, timeout=timeout_seconds)

            if execute_task in done:
                result = execute_task.result()
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(tool.name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=tool.name, success=result.success)
                return result

            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(tool.name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=tool.name, error=str(e))
            raise ToolExecutionError(tool.name, str(e)) from e

    async def run(self, name: str, arguments: dict[str, Any]) -> str:
        """Execute a tool and render the outcome as model-facing text.

        Failures never raise; they come back as strings starting with
        ``error:``. Cancellation still propagates.
        """
        try:
            result = await self.execute(name, arguments or {})
        except ToolNotFoundError as e:
            return format_tool_error(str(e))
        except ToolExecutionError as e:
            cause = e.__cause__
            return format_tool_error(str(cause) if cause is not None else str(e))
        except ToolError as e:
            return format_tool_error(str(e))
        return result.to_text()

    async def close(self) -> None:
        """Close every registered tool."""
        for tool in self._tools.values():
            try:
                await tool.close()
            except Exception as e:
                log.warning("Failed to close tool", tool=tool.name, error=str(e))


def register_default_tools(registry: ToolRegistry, enabled: list[str] | None = None) -> ToolRegistry:
    """Register the built-in tools named in ``enabled`` (all when None)."""
    from ideacode.config import get_config
    from ideacode.tools.glob import GlobTool
    from ideacode.tools.grep import GrepTool
    from ideacode.tools.read import ReadTool
    from ideacode.tools.shell import BashTool
    from ideacode.tools.web_fetch import WebFetchTool
    from ideacode.tools.web_search import WebSearchTool
    from ideacode.tools.write import EditTool, WriteTool

    cfg = get_config()
    builders = {
        "read": ReadTool,
        "write": WriteTool,
        "edit": EditTool,
        "glob": GlobTool,
        "grep": GrepTool,
        "bash": BashTool,
        "web_fetch": WebFetchTool,
        "web_search": WebSearchTool,
    }
    wanted = [normalize_tool_name(item) for item in (enabled if enabled is not None else cfg.tools.enabled)]
    for name in wanted:
        builder = builders.get(name)
        if builder is None:
            log.warning("Unknown tool in config, skipping", tool=name)
            continue
        if name == "web_search" and not cfg.tools.web_search.api_key.strip():
            log.debug("Web search disabled, no Brave API key configured")
            continue
        registry.register(builder())
    return registry


# Global registry
_registry: ToolRegistry | None = None


def get_tool_registry() -> ToolRegistry:
    """Get the global tool registry."""
    global _registry
    if _registry is None:
        _registry = register_default_tools(ToolRegistry())
    return _registry


def set_tool_registry(registry: ToolRegistry | None) -> None:
    """Set the global tool registry."""
    global _registry
    _registry = registry
