"""Tools package for ideacode."""

from ideacode.tools.registry import (
    ERROR_MARKER,
    Tool,
    ToolRegistry,
    ToolResult,
    get_tool_registry,
    register_default_tools,
    set_tool_registry,
)
from ideacode.tools.shell import BashTool
from ideacode.tools.read import ReadTool
from ideacode.tools.write import EditTool, WriteTool
from ideacode.tools.glob import GlobTool
from ideacode.tools.grep import GrepTool
from ideacode.tools.web_fetch import WebFetchTool
from ideacode.tools.web_search import WebSearchTool

__all__ = [
    "ERROR_MARKER",
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "get_tool_registry",
    "register_default_tools",
    "set_tool_registry",
    "BashTool",
    "ReadTool",
    "WriteTool",
    "EditTool",
    "GlobTool",
    "GrepTool",
    "WebFetchTool",
    "WebSearchTool",
]
