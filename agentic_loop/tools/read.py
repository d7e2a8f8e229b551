"""Read tool for reading file contents."""

from pathlib import Path
from typing import Any

from agentic_loop.logging import get_logger
from agentic_loop.tools.registry import Tool, ToolContext, ToolOutput

log = get_logger(__name__)


class ReadFileTool(Tool):
    """Read file contents."""

    name = "read_file"
    description = "Read the contents of a text file."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file, relative to the working directory",
            },
            "limit": {
                "type": "number",
                "description": "Maximum number of lines to read",
            },
            "offset": {
                "type": "number",
                "description": "Line number to start reading from (1-indexed)",
            },
        },
        "required": ["path"],
    }

    def __init__(self, max_bytes: int = 100_000):
        self.max_bytes = max_bytes

    async def execute(
        self,
        _context: ToolContext,
        path: str,
        limit: int | None = None,
        offset: int | None = None,
        **kwargs: Any,
    ) -> ToolOutput:
        """Read a file.

        Args:
            path: Path to file
            limit: Optional line limit
            offset: Optional line offset

        Returns:
            ToolOutput with file contents
        """
        try:
            file_path = (_context.working_dir / Path(path).expanduser()).resolve()

            if not file_path.exists():
                return ToolOutput.from_error(f"File not found: {path}")

            if not file_path.is_file():
                return ToolOutput.from_error(f"Not a file: {path}")

            file_size = file_path.stat().st_size
            if file_size > self.max_bytes:
                return ToolOutput.from_error(
                    f"File too large: {file_size} bytes (max {self.max_bytes})"
                )

            lines = file_path.read_text(encoding="utf-8").splitlines()
            offset = int(offset) if offset else None
            limit = int(limit) if limit else None
            if offset:
                lines = lines[offset - 1:]
            if limit:
                lines = lines[:limit]

            return ToolOutput.from_text("\n".join(lines))

        except (OSError, UnicodeDecodeError, ValueError) as e:
            log.error("Read failed", path=path, error=str(e))
            return ToolOutput.from_error(str(e))
