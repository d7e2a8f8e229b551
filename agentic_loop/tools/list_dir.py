"""Directory listing tool."""

import asyncio
from pathlib import Path
from typing import Any

from agentic_loop.logging import get_logger
from agentic_loop.tools.registry import Tool, ToolContext, ToolOutput

log = get_logger(__name__)


def _list_entries(root: Path, pattern: str) -> list[str]:
    entries = []
    for entry in sorted(root.glob(pattern)):
        name = str(entry.relative_to(root))
        entries.append(f"{name}/" if entry.is_dir() else name)
    return entries


class ListDirTool(Tool):
    """List directory entries."""

    name = "list_dir"
    description = "List files and directories, optionally filtered by a glob pattern."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Directory to list (default: working directory)",
            },
            "pattern": {
                "type": "string",
                "description": "Glob pattern (e.g., '*.py', '**/*.md'); default '*'",
            },
            "limit": {
                "type": "number",
                "description": "Maximum number of entries (default: 200)",
            },
        },
        "required": [],
    }

    async def execute(
        self,
        _context: ToolContext,
        path: str = ".",
        pattern: str = "*",
        limit: int = 200,
        **kwargs: Any,
    ) -> ToolOutput:
        try:
            root = (_context.working_dir / Path(path).expanduser()).resolve()
            if not root.is_dir():
                return ToolOutput.from_error(f"Not a directory: {path}")

            # Globbing is blocking; keep the event loop free
            entries = await asyncio.to_thread(_list_entries, root, pattern or "*")
            entries = entries[: int(limit)]
            return ToolOutput.from_text("\n".join(entries))

        except (OSError, ValueError) as e:
            log.error("List failed", path=path, error=str(e))
            return ToolOutput.from_error(str(e))
