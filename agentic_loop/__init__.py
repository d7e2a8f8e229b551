"""Agentic Loop - a tool-calling orchestration loop for chat-completion models."""

__version__ = "0.1.0"

from agentic_loop.config import Config, LoopConfig
from agentic_loop.exceptions import EndpointError, LoopAbortedError
from agentic_loop.llm import Message, ModelEndpoint, OpenAICompatEndpoint
from agentic_loop.loop import AgenticLoop, LoopResult, ToolCallRecord
from agentic_loop.safety import DefaultSafetyPipeline, SafetyPipeline
from agentic_loop.tools import ToolContext, ToolRegistry

__all__ = [
    "AgenticLoop",
    "Config",
    "DefaultSafetyPipeline",
    "EndpointError",
    "LoopAbortedError",
    "LoopConfig",
    "LoopResult",
    "Message",
    "ModelEndpoint",
    "OpenAICompatEndpoint",
    "SafetyPipeline",
    "ToolCallRecord",
    "ToolContext",
    "ToolRegistry",
    "__version__",
]
