"""Tools package for the agentic loop."""

from agentic_loop.tools.registry import (
    Tool,
    ToolCall,
    ToolContext,
    ToolExecution,
    ToolOutput,
    ToolRegistry,
)
from agentic_loop.tools.list_dir import ListDirTool
from agentic_loop.tools.read import ReadFileTool

__all__ = [
    "Tool",
    "ToolCall",
    "ToolContext",
    "ToolExecution",
    "ToolOutput",
    "ToolRegistry",
    "ListDirTool",
    "ReadFileTool",
    "build_default_registry",
]


def build_default_registry(
    enabled: list[str] | None = None,
    default_timeout: float = 30.0,
    max_read_bytes: int = 100_000,
) -> ToolRegistry:
    """Create a registry holding the enabled built-in tools."""
    builtins: list[Tool] = [ListDirTool(), ReadFileTool(max_bytes=max_read_bytes)]
    registry = ToolRegistry(default_timeout=default_timeout)
    for tool in builtins:
        if enabled is None or tool.name in enabled:
            registry.register(tool)
    return registry
