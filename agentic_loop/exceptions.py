"""Custom exceptions for the agentic loop."""


class AgenticLoopError(Exception):
    """Base exception for the agentic loop."""

    pass


class ConfigurationError(AgenticLoopError):
    """Configuration-related errors."""

    pass


class EndpointError(AgenticLoopError):
    """Model endpoint failed: transport error, non-success status or undecodable reply."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class LoopAbortedError(AgenticLoopError):
    """Invocation was aborted before producing a result."""

    def __init__(self, iteration: int):
        super().__init__(f"Agentic loop aborted during iteration {iteration}")
        self.iteration = iteration


class ToolError(AgenticLoopError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class OutputRejected(AgenticLoopError):
    """Safety pipeline refused to pass a tool's output to the model."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
