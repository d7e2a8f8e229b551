"""Model endpoint adapter - OpenAI-compatible chat completions over HTTP."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from agentic_loop.config import LoopConfig
from agentic_loop.exceptions import EndpointError
from agentic_loop.logging import get_logger

log = get_logger(__name__)


class Role(str, Enum):
    """Conversation roles understood by the endpoint."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolInvocation:
    """A tool call requested by the model.

    ``arguments`` is the raw string the model emitted and may not be valid JSON.
    """

    id: str
    name: str
    arguments: str

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_wire(cls, payload: Any) -> "ToolInvocation":
        """Decode one ``tool_calls`` entry.

        Raises:
            ValueError if the entry is not shaped like a function call
        """
        if not isinstance(payload, dict):
            raise ValueError(f"tool call entry is not an object: {payload!r}")
        function = payload.get("function")
        if not isinstance(function, dict) or not isinstance(function.get("name"), str):
            raise ValueError("tool call entry has no function name")
        arguments = function.get("arguments")
        if isinstance(arguments, (dict, list)):
            # Some servers decode the arguments for us
            arguments = json.dumps(arguments)
        elif arguments is None:
            arguments = ""
        return cls(
            id=str(payload.get("id") or ""),
            name=function["name"],
            arguments=str(arguments),
        )


@dataclass
class Message:
    """A message in the conversation."""

    role: Role
    content: str | None = None
    tool_calls: list[ToolInvocation] | None = None
    tool_call_id: str | None = None

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: str | None = None,
        tool_calls: list[ToolInvocation] | None = None,
    ) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tool_calls)

    @classmethod
    def tool_result(cls, tool_call_id: str, content: str) -> "Message":
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id)

    def to_wire(self) -> dict[str, Any]:
        """Serialize to the chat-completions message shape, omitting absent fields."""
        payload: dict[str, Any] = {"role": Role(self.role).value}
        if self.content is not None:
            payload["content"] = self.content
        if self.tool_calls is not None:
            payload["tool_calls"] = [call.to_wire() for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        return payload

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> "Message":
        """Build a message from the chat-completions shape.

        Raises:
            ValueError on an unknown role or malformed tool calls
        """
        raw_calls = payload.get("tool_calls")
        tool_calls = None
        if raw_calls is not None:
            tool_calls = [ToolInvocation.from_wire(item) for item in raw_calls]
        content = payload.get("content")
        return cls(
            role=Role(payload.get("role")),
            content=content if isinstance(content, str) else None,
            tool_calls=tool_calls,
            tool_call_id=payload.get("tool_call_id"),
        )


@dataclass(frozen=True)
class ToolDefinition:
    """Definition of a tool advertised to the model."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)  # JSON Schema

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


class ModelReply:
    """Parsed assistant reply: one of FinalText, PendingToolCalls or EmptyReply."""

    text: str | None = None

    @staticmethod
    def from_message(content: str | None, tool_calls: list[ToolInvocation] | None) -> "ModelReply":
        if tool_calls:
            return PendingToolCalls(invocations=tuple(tool_calls), text=content)
        if content is not None:
            return FinalText(text=content)
        return EmptyReply()


@dataclass(frozen=True)
class FinalText(ModelReply):
    """The model answered without requesting tools."""

    text: str


@dataclass(frozen=True)
class PendingToolCalls(ModelReply):
    """The model requested one or more tool calls.

    Any text emitted alongside the calls is kept for the transcript only.
    """

    invocations: tuple[ToolInvocation, ...]
    text: str | None = None

    def to_message(self) -> Message:
        return Message.assistant(content=self.text, tool_calls=list(self.invocations))


@dataclass(frozen=True)
class EmptyReply(ModelReply):
    """The model returned neither text nor tool calls."""

    text: None = None


class ModelEndpoint(ABC):
    """Abstract model endpoint."""

    @abstractmethod
    async def call_model(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> ModelReply:
        """Send the conversation and tool schema, return the first choice's reply.

        Raises:
            EndpointError on transport failure, non-success status or bad payload
        """
        pass

    async def aclose(self) -> None:
        pass

    async def __aenter__(self) -> "ModelEndpoint":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class OpenAICompatEndpoint(ModelEndpoint):
    """Endpoint for any server implementing ``/chat/completions``."""

    def __init__(
        self,
        config: LoopConfig,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the endpoint.

        Args:
            config: Loop configuration (URL, model, credential, sampling)
            client: Optional pre-built HTTP client, mainly for tests
        """
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=config.request_timeout,
            follow_redirects=True,
        )

    def build_request_body(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.config.model,
            "messages": [msg.to_wire() for msg in messages],
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        # Only include tools if we have any
        if tools:
            body["tools"] = [tool.to_wire() for tool in tools]
        return body

    @staticmethod
    def parse_response(data: Any) -> ModelReply:
        """Extract the first choice's message from a decoded response body."""
        if not isinstance(data, dict):
            raise EndpointError("Unexpected response payload: not a JSON object")
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise EndpointError("Empty choices in model response")
        choice = choices[0]
        message = choice.get("message") if isinstance(choice, dict) else None
        if not isinstance(message, dict):
            raise EndpointError("Model response choice has no message")

        content = message.get("content")
        if not isinstance(content, str):
            content = None

        tool_calls: list[ToolInvocation] | None = None
        raw_calls = message.get("tool_calls")
        if raw_calls is not None:
            try:
                if not isinstance(raw_calls, list):
                    raise ValueError("tool_calls is not a list")
                tool_calls = [ToolInvocation.from_wire(item) for item in raw_calls]
            except ValueError as e:
                log.warning("Ignoring malformed tool calls", error=str(e))
                tool_calls = None

        return ModelReply.from_message(content, tool_calls)

    async def call_model(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> ModelReply:
        """Issue one chat-completions request."""
        url = f"{self.base_url}/chat/completions"
        body = self.build_request_body(messages, tools)

        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        try:
            log.debug(
                "Calling model",
                model=self.config.model,
                url=url,
                msg_count=len(messages),
                tool_count=len(tools or []),
            )
            response = await self.client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise EndpointError(f"Failed to send model request: {e}") from e

        log.debug("Model response status", status=response.status_code)

        if not response.is_success:
            raise EndpointError(
                f"Model API error {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise EndpointError(f"Failed to parse model response: {e}") from e

        return self.parse_response(data)

    async def aclose(self) -> None:
        """Close the HTTP client if this endpoint created it."""
        if self._owns_client:
            await self.client.aclose()


def create_endpoint(config: LoopConfig) -> ModelEndpoint:
    """Create the model endpoint for a loop configuration."""
    return OpenAICompatEndpoint(config)
