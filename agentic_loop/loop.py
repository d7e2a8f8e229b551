"""Agentic tool-calling loop.

Drives a multi-step exchange with the model:

1. Build context (system prompt + history + user message + tool schema)
2. Call the model with the function-calling format
3. If the model requests tool calls, vet and execute them in order
4. Feed the (sanitized) results back to the model
5. Repeat until the model answers without tool calls or the iteration
   limit is reached
"""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import structlog

from agentic_loop.config import LoopConfig
from agentic_loop.exceptions import LoopAbortedError, OutputRejected
from agentic_loop.llm import (
    Message,
    ModelEndpoint,
    PendingToolCalls,
    ToolDefinition,
    ToolInvocation,
    create_endpoint,
)
from agentic_loop.logging import get_logger
from agentic_loop.safety import Block, DefaultSafetyPipeline, SafetyPipeline, Warn
from agentic_loop.tools.registry import ToolCall, ToolContext, ToolOutput, ToolRegistry

log = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ToolCallRecord:
    """Audit entry for one tool call; ``output`` is the unsanitized tool output."""

    tool_name: str
    arguments: dict[str, Any]
    output: ToolOutput


@dataclass(frozen=True)
class LoopResult:
    """Outcome of one invocation of the loop."""

    response: str | None
    tool_calls_made: tuple[ToolCallRecord, ...] = field(default_factory=tuple)
    iterations: int = 0
    hit_limit: bool = False


def limit_notice(max_iterations: int) -> str:
    return f"[Reached maximum of {max_iterations} tool-calling iterations]"


def parse_tool_arguments(tool_name: str, raw_arguments: str) -> dict[str, Any]:
    """Decode model-emitted arguments; anything but a JSON object becomes ``{}``."""
    try:
        value = json.loads(raw_arguments)
    except (TypeError, ValueError) as e:
        log.warning("Failed to parse tool arguments as JSON", tool=tool_name, error=str(e))
        return {}
    if not isinstance(value, dict):
        log.warning(
            "Tool arguments are not a JSON object",
            tool=tool_name,
            type=type(value).__name__,
        )
        return {}
    return value


async def _cancel_task(task: "asyncio.Future[Any] | None") -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        pass


class AgenticLoop:
    """The agentic loop executor.

    One instance can serve many concurrent invocations: all per-invocation
    state (messages, counter, records) lives on the stack of ``run_with_history``.
    """

    def __init__(
        self,
        config: LoopConfig,
        registry: ToolRegistry,
        endpoint: ModelEndpoint | None = None,
        safety: SafetyPipeline | None = None,
    ):
        self.config = config
        self.registry = registry
        self.endpoint = endpoint or create_endpoint(config)
        self.safety = safety or DefaultSafetyPipeline()

    async def run(
        self,
        system_prompt: str,
        user_message: str,
        tool_context: ToolContext,
        abort_event: asyncio.Event | None = None,
    ) -> LoopResult:
        """Run the loop with the given system prompt and user message."""
        return await self.run_with_history(
            system_prompt, [], user_message, tool_context, abort_event=abort_event
        )

    async def run_with_history(
        self,
        system_prompt: str,
        history: list[Message],
        user_message: str,
        tool_context: ToolContext,
        abort_event: asyncio.Event | None = None,
    ) -> LoopResult:
        """Run the loop on top of existing conversation history.

        Continues until the model produces a reply without tool calls or
        ``max_iterations`` model calls have been made.

        Raises:
            EndpointError if a model call fails
            LoopAbortedError if ``abort_event`` is set mid-invocation
        """
        with structlog.contextvars.bound_contextvars(run_id=uuid.uuid4().hex[:12]):
            return await self._run(system_prompt, history, user_message, tool_context, abort_event)

    async def _run(
        self,
        system_prompt: str,
        history: list[Message],
        user_message: str,
        tool_context: ToolContext,
        abort_event: asyncio.Event | None,
    ) -> LoopResult:
        messages: list[Message] = [Message.system(system_prompt)]
        messages.extend(history)
        messages.append(Message.user(user_message))

        tool_defs = self.registry.tool_definitions()
        tool_calls_made: list[ToolCallRecord] = []
        iterations = 0

        while True:
            iterations += 1

            if iterations > self.config.max_iterations:
                log.warning(
                    "Agentic loop hit iteration limit",
                    max_iterations=self.config.max_iterations,
                )
                return LoopResult(
                    response=limit_notice(self.config.max_iterations),
                    tool_calls_made=tuple(tool_calls_made),
                    iterations=iterations - 1,
                    hit_limit=True,
                )

            log.debug("Agentic loop iteration - calling model", iteration=iterations)
            reply = await self._interruptible(
                lambda: self.endpoint.call_model(messages, tool_defs),
                abort_event,
                iterations,
            )

            if not isinstance(reply, PendingToolCalls):
                log.debug("Agentic loop completed", iterations=iterations)
                return LoopResult(
                    response=reply.text,
                    tool_calls_made=tuple(tool_calls_made),
                    iterations=iterations,
                    hit_limit=False,
                )

            log.debug("Model requested tool calls", count=len(reply.invocations))
            if reply.text:
                log.debug("Discarding text sent alongside tool calls", chars=len(reply.text))
            messages.append(reply.to_message())

            for invocation in reply.invocations:
                record, result_message = await self._handle_invocation(
                    invocation, tool_context, abort_event, iterations
                )
                tool_calls_made.append(record)
                messages.append(result_message)

    async def _handle_invocation(
        self,
        invocation: ToolInvocation,
        tool_context: ToolContext,
        abort_event: asyncio.Event | None,
        iteration: int,
    ) -> tuple[ToolCallRecord, Message]:
        """Vet, execute and sanitize one tool call."""
        name = invocation.name
        arguments = parse_tool_arguments(name, invocation.arguments)

        verdict = self.safety.validate_input(arguments)
        if isinstance(verdict, Block):
            log.warning("Tool call blocked by input validation", tool=name, reason=verdict.reason)
            output = ToolOutput.from_error(f"Input validation failed: {verdict.reason}")
            return (
                ToolCallRecord(tool_name=name, arguments=arguments, output=output),
                Message.tool_result(invocation.id, output.to_llm_string()),
            )
        if isinstance(verdict, Warn):
            log.warning("Safety warning", tool=name, reason=verdict.reason)

        execution = await self._interruptible(
            lambda: self.registry.execute(ToolCall(name=name, arguments=arguments), tool_context),
            abort_event,
            iteration,
        )
        safe_output = self._sanitize_output(name, execution.output)

        return (
            ToolCallRecord(tool_name=name, arguments=arguments, output=execution.output),
            Message.tool_result(invocation.id, safe_output),
        )

    def _sanitize_output(self, tool_name: str, output: ToolOutput) -> str:
        """Run text/json output through the output check; errors pass through."""
        if output.is_error:
            return output.to_llm_string()
        try:
            return self.safety.check_output(tool_name, output.to_llm_string())
        except OutputRejected as e:
            log.warning("Tool output rejected", tool=tool_name, reason=e.reason)
            return f"[BLOCKED] {e.reason}"

    @staticmethod
    async def _interruptible(
        start: Callable[[], Awaitable[T]],
        abort_event: asyncio.Event | None,
        iteration: int,
    ) -> T:
        """Await one suspension point, racing it against the abort event."""
        if abort_event is None:
            return await start()
        if abort_event.is_set():
            raise LoopAbortedError(iteration)

        work = asyncio.ensure_future(start())
        abort_wait = asyncio.ensure_future(abort_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, abort_wait},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if work in done:
                return work.result()
            log.info("Agentic loop aborted", iteration=iteration)
            await _cancel_task(work)
            raise LoopAbortedError(iteration)
        except asyncio.CancelledError:
            await _cancel_task(work)
            raise
        finally:
            await _cancel_task(abort_wait)

    async def aclose(self) -> None:
        await self.endpoint.aclose()
