import asyncio
import json
from typing import Any

import pytest
from structlog.testing import capture_logs

from agentic_loop.config import LoopConfig
from agentic_loop.exceptions import EndpointError, LoopAbortedError, OutputRejected
from agentic_loop.llm import (
    EmptyReply,
    FinalText,
    Message,
    ModelEndpoint,
    ModelReply,
    PendingToolCalls,
    Role,
    ToolDefinition,
    ToolInvocation,
)
from agentic_loop.loop import AgenticLoop, LoopResult, parse_tool_arguments
from agentic_loop.safety import Allow, Block, SafetyPipeline, SafetyVerdict, Warn
from agentic_loop.tools.registry import Tool, ToolContext, ToolOutput, ToolRegistry


class ScriptedEndpoint(ModelEndpoint):
    """Replays a list of replies (or exceptions) and records what it was sent."""

    def __init__(self, replies: list[Any]):
        self.replies = list(replies)
        self.calls: list[dict[str, Any]] = []

    async def call_model(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> ModelReply:
        self.calls.append({"messages": list(messages), "tools": tools})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class AlwaysToolsEndpoint(ModelEndpoint):
    def __init__(self):
        self.call_count = 0

    async def call_model(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> ModelReply:
        self.call_count += 1
        return PendingToolCalls(
            invocations=(ToolInvocation(id=f"c{self.call_count}", name="echo", arguments="{}"),)
        )


class FakeSafety(SafetyPipeline):
    def __init__(
        self,
        verdicts: dict[str, SafetyVerdict] | None = None,
        rewrite: dict[str, str] | None = None,
        reject: dict[str, str] | None = None,
    ):
        self.verdicts = verdicts or {}
        self.rewrite = rewrite or {}
        self.reject = reject or {}
        self.checked: list[tuple[str, str]] = []

    def validate_input(self, arguments: dict[str, Any]) -> SafetyVerdict:
        return self.verdicts.get(str(arguments.get("value", "")), Allow())

    def check_output(self, tool_name: str, text: str) -> str:
        self.checked.append((tool_name, text))
        if tool_name in self.reject:
            raise OutputRejected(self.reject[tool_name])
        return self.rewrite.get(text, text)


class EchoTool(Tool):
    name = "echo"
    description = "Echo the value argument"
    parameters = {
        "type": "object",
        "properties": {"value": {"type": "string"}},
        "required": [],
    }

    def __init__(self):
        self.seen: list[dict[str, Any]] = []

    async def execute(self, _context: ToolContext, **kwargs: Any) -> ToolOutput:
        self.seen.append(dict(kwargs))
        return ToolOutput.from_text(f"echo:{kwargs.get('value', '')}")


class ListDirStub(Tool):
    name = "list_dir"
    description = "List files"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, _context: ToolContext, **kwargs: Any) -> ToolOutput:
        return ToolOutput.from_text("a.txt\nb.txt")


class SecretTool(Tool):
    name = "secret"
    description = "Returns sensitive text"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, _context: ToolContext, **kwargs: Any) -> ToolOutput:
        return ToolOutput.from_text("password=hunter2")


class ExplodingTool(Tool):
    name = "explode"
    description = "Always raises"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, _context: ToolContext, **kwargs: Any) -> ToolOutput:
        raise RuntimeError("disk on fire")


class HangingTool(Tool):
    name = "hang"
    description = "Never finishes"
    parameters = {"type": "object", "properties": {}, "required": []}
    timeout_seconds = 30.0

    def __init__(self):
        self.started = asyncio.Event()
        self.cancelled = False

    async def execute(self, _context: ToolContext, **kwargs: Any) -> ToolOutput:
        self.started.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return ToolOutput.from_text("late")


class SlowEndpoint(ModelEndpoint):
    """Blocks inside call_model until cancelled."""

    def __init__(self):
        self.started = asyncio.Event()
        self.cancelled = False

    async def call_model(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> ModelReply:
        self.started.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return FinalText("too late")


class StructuredTool(Tool):
    name = "stats"
    description = "Returns structured data"
    parameters = {"type": "object", "properties": {}, "required": []}

    data = {"files": 2, "names": ["a.txt", "b.txt"], "token": "sk-live"}

    async def execute(self, _context: ToolContext, **kwargs: Any) -> dict[str, Any]:
        return self.data


def _call(call_id: str, name: str = "echo", arguments: str = "{}") -> ToolInvocation:
    return ToolInvocation(id=call_id, name=name, arguments=arguments)


def _registry(*tools: Tool) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool)
    return registry


def _tool_messages(messages: list[Message]) -> list[Message]:
    return [msg for msg in messages if msg.role == Role.TOOL]


@pytest.mark.asyncio
async def test_list_files_scenario():
    endpoint = ScriptedEndpoint([
        PendingToolCalls(invocations=(_call("t1", "list_dir", "{}"),)),
        FinalText("There are two files."),
    ])
    loop = AgenticLoop(LoopConfig(), _registry(ListDirStub()), endpoint=endpoint, safety=FakeSafety())

    result = await loop.run("You are a test agent.", "list files", ToolContext())

    assert result.response == "There are two files."
    assert result.iterations == 2
    assert result.hit_limit is False
    assert len(result.tool_calls_made) == 1
    assert result.tool_calls_made[0].tool_name == "list_dir"
    assert "a.txt\nb.txt" in result.tool_calls_made[0].output.to_llm_string()

    second_request = endpoint.calls[1]["messages"]
    assert [msg.role for msg in second_request] == [
        Role.SYSTEM,
        Role.USER,
        Role.ASSISTANT,
        Role.TOOL,
    ]
    assert second_request[0].content == "You are a test agent."
    assert second_request[1].content == "list files"
    assert second_request[3].tool_call_id == "t1"
    assert second_request[3].content == "a.txt\nb.txt"


@pytest.mark.asyncio
async def test_immediate_final_answer_uses_one_model_call():
    endpoint = ScriptedEndpoint([FinalText("hello there")])
    loop = AgenticLoop(LoopConfig(), _registry(EchoTool()), endpoint=endpoint, safety=FakeSafety())

    result = await loop.run("sys", "hi", ToolContext())

    assert result == LoopResult(response="hello there", tool_calls_made=(), iterations=1, hit_limit=False)
    assert len(endpoint.calls) == 1


@pytest.mark.asyncio
async def test_tool_schema_sent_with_every_model_call():
    endpoint = ScriptedEndpoint([
        PendingToolCalls(invocations=(_call("c1"),)),
        FinalText("done"),
    ])
    loop = AgenticLoop(LoopConfig(), _registry(EchoTool()), endpoint=endpoint, safety=FakeSafety())

    await loop.run("sys", "go", ToolContext())

    for call in endpoint.calls:
        assert [tool.name for tool in call["tools"]] == ["echo"]


@pytest.mark.asyncio
async def test_empty_reply_terminates_without_text():
    endpoint = ScriptedEndpoint([EmptyReply()])
    loop = AgenticLoop(LoopConfig(), _registry(), endpoint=endpoint, safety=FakeSafety())

    result = await loop.run("sys", "hi", ToolContext())

    assert result.response is None
    assert result.iterations == 1
    assert result.hit_limit is False


@pytest.mark.asyncio
@pytest.mark.parametrize("max_iterations", [1, 2, 5])
async def test_iteration_limit_stops_after_max_model_calls(max_iterations: int):
    endpoint = AlwaysToolsEndpoint()
    loop = AgenticLoop(
        LoopConfig(max_iterations=max_iterations),
        _registry(EchoTool()),
        endpoint=endpoint,
        safety=FakeSafety(),
    )

    result = await loop.run("sys", "loop forever", ToolContext())

    assert endpoint.call_count == max_iterations
    assert result.hit_limit is True
    assert result.iterations == max_iterations
    assert result.response == f"[Reached maximum of {max_iterations} tool-calling iterations]"
    assert len(result.tool_calls_made) == max_iterations


@pytest.mark.asyncio
async def test_malformed_arguments_become_empty_object_and_loop_continues():
    tool = EchoTool()
    endpoint = ScriptedEndpoint([
        PendingToolCalls(invocations=(_call("c1", arguments="{not json"),)),
        FinalText("recovered"),
    ])
    loop = AgenticLoop(LoopConfig(), _registry(tool), endpoint=endpoint, safety=FakeSafety())

    with capture_logs() as logs:
        result = await loop.run("sys", "go", ToolContext())

    assert result.response == "recovered"
    assert len(result.tool_calls_made) == 1
    assert result.tool_calls_made[0].arguments == {}
    assert tool.seen == [{}]
    assert any(entry["event"] == "Failed to parse tool arguments as JSON" for entry in logs)


@pytest.mark.asyncio
async def test_block_verdict_skips_only_the_blocked_invocation():
    tool = EchoTool()
    safety = FakeSafety(verdicts={"bad": Block("forbidden value")})
    endpoint = ScriptedEndpoint([
        PendingToolCalls(invocations=(
            _call("a", arguments='{"value": "first"}'),
            _call("b", arguments='{"value": "bad"}'),
            _call("c", arguments='{"value": "third"}'),
        )),
        FinalText("done"),
    ])
    loop = AgenticLoop(LoopConfig(), _registry(tool), endpoint=endpoint, safety=safety)

    result = await loop.run("sys", "go", ToolContext())

    assert [seen["value"] for seen in tool.seen] == ["first", "third"]
    blocked = result.tool_calls_made[1]
    assert blocked.output.is_error
    assert "forbidden value" in blocked.output.content

    tool_messages = _tool_messages(endpoint.calls[1]["messages"])
    assert [msg.tool_call_id for msg in tool_messages] == ["a", "b", "c"]
    assert tool_messages[1].content == "Error: Input validation failed: forbidden value"
    assert tool_messages[0].content == "echo:first"
    assert tool_messages[2].content == "echo:third"


@pytest.mark.asyncio
async def test_warn_verdict_is_logged_and_tool_still_runs():
    tool = EchoTool()
    safety = FakeSafety(verdicts={"odd": Warn("looks odd")})
    endpoint = ScriptedEndpoint([
        PendingToolCalls(invocations=(_call("c1", arguments='{"value": "odd"}'),)),
        FinalText("ok"),
    ])
    loop = AgenticLoop(LoopConfig(), _registry(tool), endpoint=endpoint, safety=safety)

    with capture_logs() as logs:
        result = await loop.run("sys", "go", ToolContext())

    assert tool.seen == [{"value": "odd"}]
    assert result.tool_calls_made[0].output.content == "echo:odd"
    warnings = [entry for entry in logs if entry["event"] == "Safety warning"]
    assert warnings and warnings[0]["reason"] == "looks odd"


@pytest.mark.asyncio
async def test_records_keep_unsanitized_output_while_model_sees_sanitized_text():
    safety = FakeSafety(rewrite={"password=hunter2": "password=[REDACTED]"})
    endpoint = ScriptedEndpoint([
        PendingToolCalls(invocations=(_call("s1", "secret"),)),
        FinalText("ok"),
    ])
    loop = AgenticLoop(LoopConfig(), _registry(SecretTool()), endpoint=endpoint, safety=safety)

    result = await loop.run("sys", "go", ToolContext())

    assert result.tool_calls_made[0].output.content == "password=hunter2"
    tool_message = _tool_messages(endpoint.calls[1]["messages"])[0]
    assert tool_message.content == "password=[REDACTED]"


@pytest.mark.asyncio
async def test_rejected_output_is_replaced_with_blocked_notice():
    safety = FakeSafety(reject={"secret": "contains credentials"})
    endpoint = ScriptedEndpoint([
        PendingToolCalls(invocations=(_call("s1", "secret"),)),
        FinalText("ok"),
    ])
    loop = AgenticLoop(LoopConfig(), _registry(SecretTool()), endpoint=endpoint, safety=safety)

    result = await loop.run("sys", "go", ToolContext())

    assert result.tool_calls_made[0].output.content == "password=hunter2"
    tool_message = _tool_messages(endpoint.calls[1]["messages"])[0]
    assert tool_message.content == "[BLOCKED] contains credentials"


@pytest.mark.asyncio
async def test_tool_exception_is_fed_back_as_error_and_loop_continues():
    safety = FakeSafety()
    endpoint = ScriptedEndpoint([
        PendingToolCalls(invocations=(_call("x1", "explode"),)),
        FinalText("the tool failed"),
    ])
    loop = AgenticLoop(LoopConfig(), _registry(ExplodingTool()), endpoint=endpoint, safety=safety)

    result = await loop.run("sys", "go", ToolContext())

    assert result.response == "the tool failed"
    record = result.tool_calls_made[0]
    assert record.output.is_error
    assert "disk on fire" in record.output.content
    tool_message = _tool_messages(endpoint.calls[1]["messages"])[0]
    assert tool_message.content.startswith("Error: ")
    assert safety.checked == []


@pytest.mark.asyncio
async def test_unknown_tool_is_reported_to_model():
    endpoint = ScriptedEndpoint([
        PendingToolCalls(invocations=(_call("u1", "missing"),)),
        FinalText("sorry"),
    ])
    loop = AgenticLoop(LoopConfig(), _registry(EchoTool()), endpoint=endpoint, safety=FakeSafety())

    result = await loop.run("sys", "go", ToolContext())

    assert result.tool_calls_made[0].output.content == "Tool not found: missing"
    assert _tool_messages(endpoint.calls[1]["messages"])[0].tool_call_id == "u1"


@pytest.mark.asyncio
async def test_text_alongside_tool_calls_is_not_the_final_response():
    endpoint = ScriptedEndpoint([
        PendingToolCalls(invocations=(_call("c1"),), text="Let me check."),
        FinalText("checked"),
    ])
    loop = AgenticLoop(LoopConfig(), _registry(EchoTool()), endpoint=endpoint, safety=FakeSafety())

    result = await loop.run("sys", "go", ToolContext())

    assert result.response == "checked"
    assistant = endpoint.calls[1]["messages"][2]
    assert assistant.role == Role.ASSISTANT
    assert assistant.tool_calls == [_call("c1")]


@pytest.mark.asyncio
async def test_history_is_inserted_between_system_prompt_and_user_message():
    history = [Message.user("earlier question"), Message.assistant("earlier answer")]
    endpoint = ScriptedEndpoint([FinalText("ok")])
    loop = AgenticLoop(LoopConfig(), _registry(), endpoint=endpoint, safety=FakeSafety())

    await loop.run_with_history("sys", history, "new question", ToolContext())

    sent = endpoint.calls[0]["messages"]
    assert [msg.content for msg in sent] == ["sys", "earlier question", "earlier answer", "new question"]


@pytest.mark.asyncio
async def test_endpoint_error_propagates():
    endpoint = ScriptedEndpoint([
        PendingToolCalls(invocations=(_call("c1"),)),
        EndpointError("Model API error 500: boom", status_code=500),
    ])
    tool = EchoTool()
    loop = AgenticLoop(LoopConfig(), _registry(tool), endpoint=endpoint, safety=FakeSafety())

    with pytest.raises(EndpointError, match="500"):
        await loop.run("sys", "go", ToolContext())
    assert len(tool.seen) == 1


@pytest.mark.asyncio
async def test_abort_event_cancels_running_tool():
    tool = HangingTool()
    endpoint = ScriptedEndpoint([
        PendingToolCalls(invocations=(_call("h1", "hang"),)),
        FinalText("never reached"),
    ])
    loop = AgenticLoop(LoopConfig(), _registry(tool), endpoint=endpoint, safety=FakeSafety())
    abort_event = asyncio.Event()

    execution = asyncio.create_task(loop.run("sys", "go", ToolContext(), abort_event=abort_event))
    await asyncio.wait_for(tool.started.wait(), timeout=5)
    abort_event.set()

    with pytest.raises(LoopAbortedError):
        await execution
    assert tool.cancelled is True
    assert len(endpoint.calls) == 1


@pytest.mark.asyncio
async def test_preset_abort_event_prevents_any_model_call():
    endpoint = ScriptedEndpoint([FinalText("unused")])
    loop = AgenticLoop(LoopConfig(), _registry(), endpoint=endpoint, safety=FakeSafety())
    abort_event = asyncio.Event()
    abort_event.set()

    with pytest.raises(LoopAbortedError):
        await loop.run("sys", "go", ToolContext(), abort_event=abort_event)
    assert endpoint.calls == []


@pytest.mark.asyncio
async def test_task_cancellation_propagates_to_tool():
    tool = HangingTool()
    endpoint = ScriptedEndpoint([PendingToolCalls(invocations=(_call("h1", "hang"),))])
    loop = AgenticLoop(LoopConfig(), _registry(tool), endpoint=endpoint, safety=FakeSafety())

    execution = asyncio.create_task(loop.run("sys", "go", ToolContext()))
    await asyncio.wait_for(tool.started.wait(), timeout=5)
    execution.cancel()

    with pytest.raises(asyncio.CancelledError):
        await execution
    assert tool.cancelled is True


@pytest.mark.asyncio
async def test_abort_event_cancels_in_flight_model_call():
    endpoint = SlowEndpoint()
    loop = AgenticLoop(LoopConfig(), _registry(), endpoint=endpoint, safety=FakeSafety())
    abort_event = asyncio.Event()

    execution = asyncio.create_task(loop.run("sys", "go", ToolContext(), abort_event=abort_event))
    await asyncio.wait_for(endpoint.started.wait(), timeout=5)
    abort_event.set()

    with pytest.raises(LoopAbortedError):
        await execution
    assert endpoint.cancelled is True


@pytest.mark.asyncio
async def test_task_cancellation_propagates_to_model_call():
    endpoint = SlowEndpoint()
    loop = AgenticLoop(LoopConfig(), _registry(), endpoint=endpoint, safety=FakeSafety())

    execution = asyncio.create_task(loop.run("sys", "go", ToolContext()))
    await asyncio.wait_for(endpoint.started.wait(), timeout=5)
    execution.cancel()

    with pytest.raises(asyncio.CancelledError):
        await execution
    assert endpoint.cancelled is True


@pytest.mark.asyncio
async def test_json_output_is_pretty_printed_checked_and_recorded_raw():
    pretty = json.dumps(StructuredTool.data, indent=2, ensure_ascii=False)
    safety = FakeSafety(rewrite={pretty: "stats: [REDACTED]"})
    endpoint = ScriptedEndpoint([
        PendingToolCalls(invocations=(_call("j1", "stats"),)),
        FinalText("two files"),
    ])
    loop = AgenticLoop(LoopConfig(), _registry(StructuredTool()), endpoint=endpoint, safety=safety)

    result = await loop.run("sys", "go", ToolContext())

    assert safety.checked == [("stats", pretty)]
    tool_message = _tool_messages(endpoint.calls[1]["messages"])[0]
    assert tool_message.content == "stats: [REDACTED]"
    record = result.tool_calls_made[0]
    assert record.output.kind == "json"
    assert record.output.data == StructuredTool.data
    assert record.output.to_llm_string() == pretty


@pytest.mark.asyncio
async def test_concurrent_invocations_do_not_share_messages():
    registry = _registry(EchoTool())
    first = ScriptedEndpoint([
        PendingToolCalls(invocations=(_call("a1", arguments='{"value": "one"}'),)),
        FinalText("first"),
    ])
    second = ScriptedEndpoint([
        PendingToolCalls(invocations=(_call("b1", arguments='{"value": "two"}'),)),
        FinalText("second"),
    ])
    loop_a = AgenticLoop(LoopConfig(), registry, endpoint=first, safety=FakeSafety())
    loop_b = AgenticLoop(LoopConfig(), registry, endpoint=second, safety=FakeSafety())

    result_a, result_b = await asyncio.gather(
        loop_a.run("sys", "a", ToolContext()),
        loop_b.run("sys", "b", ToolContext()),
    )

    assert result_a.response == "first"
    assert result_b.response == "second"
    assert [m.tool_call_id for m in _tool_messages(first.calls[1]["messages"])] == ["a1"]
    assert [m.tool_call_id for m in _tool_messages(second.calls[1]["messages"])] == ["b1"]


def test_parse_tool_arguments_rejects_non_objects():
    assert parse_tool_arguments("t", '{"a": 1}') == {"a": 1}
    assert parse_tool_arguments("t", "[1, 2]") == {}
    assert parse_tool_arguments("t", "") == {}
    assert parse_tool_arguments("t", "null") == {}
