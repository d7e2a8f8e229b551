"""Tool registry and base tool class."""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from agentic_loop.exceptions import ToolExecutionError, ToolNotFoundError
from agentic_loop.llm import ToolDefinition
from agentic_loop.logging import get_logger

log = get_logger(__name__)


class ToolOutput(BaseModel):
    """Output of one tool execution: plain text, a structured value, or an error."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["text", "json", "error"] = "text"
    content: str = ""
    data: Any = None

    @classmethod
    def from_text(cls, text: str) -> "ToolOutput":
        return cls(kind="text", content=text)

    @classmethod
    def from_json(cls, data: Any) -> "ToolOutput":
        return cls(kind="json", data=data)

    @classmethod
    def from_error(cls, message: str) -> "ToolOutput":
        return cls(kind="error", content=message)

    @property
    def is_error(self) -> bool:
        return self.kind == "error"

    def to_llm_string(self) -> str:
        """Canonical text fed back to the model."""
        if self.kind == "json":
            try:
                return json.dumps(self.data, indent=2, ensure_ascii=False)
            except (TypeError, ValueError):
                return str(self.data)
        if self.kind == "error":
            return f"Error: {self.content}"
        return self.content


class ToolCall(BaseModel):
    """A resolved tool call: name plus parsed arguments."""

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class ToolContext(BaseModel):
    """Per-invocation context handed to every tool."""

    model_config = ConfigDict(frozen=True)

    working_dir: Path = Field(default_factory=Path.cwd)
    session_id: str = ""
    extra: dict[str, Any] = Field(default_factory=dict)


class ToolExecution(BaseModel):
    """Result of ToolRegistry.execute."""

    output: ToolOutput
    duration_seconds: float = 0.0


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float | None = None

    @abstractmethod
    async def execute(self, _context: ToolContext, **kwargs: Any) -> ToolOutput | str | dict | list:
        """Execute the tool.

        Args:
            _context: Invocation context (working directory, session)
            **kwargs: Tool-specific arguments

        Returns:
            ToolOutput, or a str / dict / list that the registry wraps
        """
        pass

    def get_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate tool arguments against schema.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = (self.parameters or {}).get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )


def _coerce_output(value: Any) -> ToolOutput:
    if isinstance(value, ToolOutput):
        return value
    if isinstance(value, (dict, list)):
        return ToolOutput.from_json(value)
    if value is None:
        return ToolOutput.from_text("")
    return ToolOutput.from_text(str(value))


class ToolRegistry:
    """Registry for managing available tools.

    Safe to share between concurrent invocations: execution keeps no
    per-call state on the registry.
    """

    def __init__(self, default_timeout: float = 30.0):
        self._tools: dict[str, Tool] = {}
        self.default_timeout = default_timeout

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def tool_definitions(self) -> list[ToolDefinition]:
        """Schemas advertised to the model, in registration order."""
        return [tool.get_definition() for tool in self._tools.values()]

    async def execute(self, call: ToolCall, context: ToolContext) -> ToolExecution:
        """Execute a tool call.

        Tool failures (unknown tool, bad arguments, exceptions, timeouts) are
        returned as error outputs so the caller can feed them back to the
        model. Cancellation is propagated.
        """
        started = time.monotonic()
        output = await self._execute_output(call, context)
        return ToolExecution(
            output=output,
            duration_seconds=time.monotonic() - started,
        )

    async def _execute_output(self, call: ToolCall, context: ToolContext) -> ToolOutput:
        name = call.name
        try:
            tool = self.get(name)
            tool.validate_arguments(call.arguments)
        except (ToolNotFoundError, ToolExecutionError) as e:
            log.warning("Tool call rejected", tool=name, error=str(e))
            return ToolOutput.from_error(str(e))

        timeout_seconds = float(tool.timeout_seconds or self.default_timeout)
        try:
            log.info("Executing tool", tool=name, args=call.arguments)
            result = await asyncio.wait_for(
                tool.execute(_context=context, **call.arguments),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError:
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            log.error("Tool execution timed out", tool=name, timeout=timeout_label)
            return ToolOutput.from_error(
                str(ToolExecutionError(name, f"Execution timed out after {timeout_label}s"))
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            return ToolOutput.from_error(str(ToolExecutionError(name, str(e))))

        output = _coerce_output(result)
        log.info("Tool executed", tool=name, success=not output.is_error)
        return output
