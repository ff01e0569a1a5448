from __future__ import annotations

import asyncio
import json
import time

import pytest

from toolbridge.bridge import INTERNAL_ERROR_REPLY, ToolCallBridge, parse_inbound
from toolbridge.config import RouteKind, ToolRoute
from toolbridge.errors import DuplicateCallId, MalformedMessage, RunFailed
from toolbridge.models import RunOutput, RunState, ToolCall
from toolbridge.pending import PendingCallTable
from toolbridge.registry import ConnectionRegistry
from toolbridge.routing import ToolRouter

from .fakes import ClientSimulator, FakeConnection, wait_for


def _bridge(*, routes=None, call_timeout_s: float = 1.0, notify_on_timeout: bool = True) -> ToolCallBridge:
    router = ToolRouter(routes) if routes is not None else ToolRouter()
    return ToolCallBridge(
        ConnectionRegistry(),
        PendingCallTable(),
        router=router,
        call_timeout_s=call_timeout_s,
        notify_on_timeout=notify_on_timeout,
    )


async def _connect(bridge: ToolCallBridge, session_id: str = "thread_1") -> FakeConnection:
    connection = FakeConnection()
    await bridge.registry.register(session_id, connection)
    return connection


@pytest.mark.asyncio
async def test_dispatch_sends_commands_and_collects_results() -> None:
    bridge = _bridge()
    connection = await _connect(bridge)
    client = ClientSimulator(bridge, "thread_1", connection)
    calls = [
        ToolCall(call_id="c1", name="ws_drawLine", arguments={"color": "red"}),
        ToolCall(call_id="c2", name="ws_clear"),
    ]

    task = asyncio.create_task(bridge.dispatch("thread_1", calls, run_id="run_1"))
    await wait_for(lambda: len(connection.commands()) == 2)
    assert connection.commands() == [
        {"cmd": "drawLine", "type": "command", "tool_call_id": "c1", "color": "red"},
        {"cmd": "clear", "type": "command", "tool_call_id": "c2"},
    ]
    await client.answer_all()
    outputs = await task

    assert [output.call_id for output in outputs] == ["c1", "c2"]
    assert outputs[0].output == {"status": "ok", "cmd": "drawLine"}
    assert all(output.ok for output in outputs)
    assert len(bridge.pending) == 0


@pytest.mark.asyncio
async def test_command_type_comes_from_arguments() -> None:
    bridge = _bridge()
    connection = await _connect(bridge)
    call = ToolCall(call_id="c1", name="ws_select", arguments={"type": "query", "cmd": "ignored"})

    task = asyncio.create_task(bridge.dispatch("thread_1", [call]))
    await wait_for(lambda: bool(connection.commands()))
    await ClientSimulator(bridge, "thread_1", connection).answer_all()
    await task

    assert connection.commands() == [{"cmd": "select", "type": "query", "tool_call_id": "c1"}]


@pytest.mark.asyncio
async def test_batch_calls_wait_concurrently() -> None:
    bridge = _bridge()
    connection = await _connect(bridge)
    delays = {"c1": 0.05, "c2": 0.1, "c3": 0.15}
    calls = [ToolCall(call_id=call_id, name="ws_step") for call_id in delays]

    async def _answer(call_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        await bridge.on_inbound_message("thread_1", json.dumps({"tool_call_id": call_id, "value": call_id}))

    started = time.monotonic()
    task = asyncio.create_task(bridge.dispatch("thread_1", calls))
    await wait_for(lambda: len(connection.commands()) == 3)
    await asyncio.gather(*(_answer(call_id, delay) for call_id, delay in delays.items()))
    outputs = await task
    elapsed = time.monotonic() - started

    assert [output.output for output in outputs] == [{"value": "c1"}, {"value": "c2"}, {"value": "c3"}]
    assert elapsed < 0.3


@pytest.mark.asyncio
async def test_unanswered_call_times_out_and_notifies_session() -> None:
    bridge = _bridge(call_timeout_s=0.05)
    connection = await _connect(bridge)

    outputs = await bridge.dispatch("thread_1", [ToolCall(call_id="c1", name="ws_slow")])

    assert outputs[0].code == "call_timed_out"
    assert outputs[0].ok is False
    timeout_frames = [frame for frame in connection.frames() if frame.get("type") == "TOOL_CALL_TIMEOUT"]
    assert timeout_frames == [{"type": "TOOL_CALL_TIMEOUT", "tool_call_id": "c1", "cmd": "slow"}]

    # A late answer is dropped without effect.
    assert await bridge.on_inbound_message("thread_1", json.dumps({"tool_call_id": "c1"})) is None


@pytest.mark.asyncio
async def test_timeout_notification_can_be_disabled() -> None:
    bridge = _bridge(call_timeout_s=0.02, notify_on_timeout=False)
    connection = await _connect(bridge)

    await bridge.dispatch("thread_1", [ToolCall(call_id="c1", name="ws_slow")])

    assert [frame["type"] for frame in connection.frames()] == ["command"]


@pytest.mark.asyncio
async def test_missing_connection_still_times_out() -> None:
    bridge = _bridge(call_timeout_s=0.02)

    outputs = await bridge.dispatch("thread_gone", [ToolCall(call_id="c1", name="ws_draw")])

    assert outputs[0].code == "call_timed_out"


@pytest.mark.asyncio
async def test_per_route_timeout_overrides_default() -> None:
    bridge = _bridge(routes=[ToolRoute("ws_", RouteKind.CLIENT, timeout_s=0.02)], call_timeout_s=10.0)
    await _connect(bridge)

    outputs = await asyncio.wait_for(bridge.dispatch("thread_1", [ToolCall(call_id="c1", name="ws_x")]), 1.0)

    assert outputs[0].code == "call_timed_out"


@pytest.mark.asyncio
async def test_unrouted_tool_yields_error_output() -> None:
    bridge = _bridge()
    connection = await _connect(bridge)

    outputs = await bridge.dispatch("thread_1", [ToolCall(call_id="c1", name="lookup_weather")])

    assert outputs[0].code == "unsupported_tool"
    assert "lookup_weather" in outputs[0].error
    assert connection.sent == []


@pytest.mark.asyncio
async def test_notify_route_does_not_wait() -> None:
    bridge = _bridge(routes=[ToolRoute("ui_", RouteKind.NOTIFY)])
    connection = await _connect(bridge)

    outputs = await bridge.dispatch("thread_1", [ToolCall(call_id="c1", name="ui_toast", arguments={"text": "hi"})])
    dropped = await bridge.dispatch("thread_other", [ToolCall(call_id="c2", name="ui_toast")])

    assert outputs[0].output == {"status": "sent"}
    assert connection.commands() == [{"cmd": "toast", "type": "command", "tool_call_id": "c1", "text": "hi"}]
    assert dropped[0].output == {"status": "dropped"}
    assert len(bridge.pending) == 0


@pytest.mark.asyncio
async def test_local_route_runs_in_process() -> None:
    bridge = _bridge(routes=[ToolRoute("srv_", RouteKind.LOCAL, timeout_s=0.05)])

    async def _add(call: ToolCall) -> int:
        return call.arguments["a"] + call.arguments["b"]

    async def _broken(call: ToolCall) -> None:
        raise RuntimeError("boom")

    async def _slow(call: ToolCall) -> None:
        await asyncio.sleep(1)

    bridge.router.register_local_tool("add", _add)
    bridge.router.register_local_tool("broken", _broken)
    bridge.router.register_local_tool("slow", _slow)

    outputs = await bridge.dispatch(
        "thread_1",
        [
            ToolCall(call_id="c1", name="srv_add", arguments={"a": 2, "b": 3}),
            ToolCall(call_id="c2", name="srv_broken"),
            ToolCall(call_id="c3", name="srv_slow"),
            ToolCall(call_id="c4", name="srv_unknown"),
        ],
    )

    assert outputs[0].output == 5
    assert (outputs[1].code, outputs[1].error) == ("tool_error", "boom")
    assert outputs[2].code == "call_timed_out"
    assert outputs[3].code == "unsupported_tool"


@pytest.mark.asyncio
async def test_duplicate_id_in_batch_aborts_before_sending() -> None:
    bridge = _bridge()
    connection = await _connect(bridge)
    calls = [ToolCall(call_id="same", name="ws_a"), ToolCall(call_id="same", name="ws_b")]

    with pytest.raises(DuplicateCallId):
        await bridge.dispatch("thread_1", calls)

    assert connection.sent == []
    assert len(bridge.pending) == 0


@pytest.mark.asyncio
async def test_duplicate_of_pending_call_keeps_first() -> None:
    bridge = _bridge()
    connection = await _connect(bridge)
    first = asyncio.create_task(bridge.dispatch("thread_1", [ToolCall(call_id="c1", name="ws_a")]))
    await wait_for(lambda: bool(connection.commands()))

    with pytest.raises(DuplicateCallId):
        await bridge.dispatch("thread_1", [ToolCall(call_id="c0", name="ws_b"), ToolCall(call_id="c1", name="ws_c")])

    assert bridge.pending.pending_ids() == ["c1"]
    await ClientSimulator(bridge, "thread_1", connection).answer_all()
    outputs = await first
    assert outputs[0].ok


@pytest.mark.asyncio
async def test_client_error_result_maps_to_error_output() -> None:
    bridge = _bridge()
    connection = await _connect(bridge)

    task = asyncio.create_task(bridge.dispatch("thread_1", [ToolCall(call_id="c1", name="ws_fail")]))
    await wait_for(lambda: bool(connection.commands()))
    await ClientSimulator(bridge, "thread_1", connection).answer_all({"error": "canvas locked"})
    outputs = await task

    assert (outputs[0].code, outputs[0].error) == ("client_error", "canvas locked")


@pytest.mark.asyncio
async def test_answer_from_other_session_does_not_fulfill() -> None:
    bridge = _bridge(call_timeout_s=0.05)
    connection = await _connect(bridge)

    task = asyncio.create_task(bridge.dispatch("thread_1", [ToolCall(call_id="c1", name="ws_a")]))
    await wait_for(lambda: bool(connection.commands()))
    await bridge.on_inbound_message("thread_2", json.dumps({"tool_call_id": "c1", "status": "ok"}))
    outputs = await task

    assert outputs[0].code == "call_timed_out"


@pytest.mark.asyncio
async def test_cancelling_run_releases_waiting_calls() -> None:
    bridge = _bridge()
    connection = await _connect(bridge)

    task = asyncio.create_task(bridge.dispatch("thread_1", [ToolCall(call_id="c1", name="ws_a")], run_id="run_9"))
    await wait_for(lambda: bool(connection.commands()))
    bridge.run_abandoned(RunState(run_id="run_9", session_id="thread_1"))
    outputs = await task

    assert outputs[0].code == "call_cancelled"


@pytest.mark.asyncio
async def test_cancelling_dispatch_clears_pending_entries() -> None:
    bridge = _bridge()
    connection = await _connect(bridge)

    task = asyncio.create_task(bridge.dispatch("thread_1", [ToolCall(call_id="c1", name="ws_a")]))
    await wait_for(lambda: bool(connection.commands()))
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(bridge.pending) == 0


def test_parse_inbound_rejects_defective_frames() -> None:
    for frame in ("not json", "[1, 2]", "{}", '{"tool_call_id": "  "}', b"\xff\xfe"):
        with pytest.raises(MalformedMessage):
            parse_inbound(frame)

    envelope = parse_inbound(b'{"event": "ping", "data": {"n": 1}}')
    assert (envelope.event, envelope.data) == ("ping", {"n": 1})


@pytest.mark.asyncio
async def test_inbound_malformed_and_unknown_events_are_ignored() -> None:
    bridge = _bridge()

    assert await bridge.on_inbound_message("thread_1", "not json") is None
    assert await bridge.on_inbound_message("thread_1", json.dumps({"event": "mystery"})) is None
    assert await bridge.on_inbound_message("thread_1", json.dumps({"tool_call_id": "unknown"})) is None


@pytest.mark.asyncio
async def test_unsolicited_handlers_reply() -> None:
    bridge = _bridge()
    seen: list[tuple[str, object]] = []

    async def _echo(session_id: str, data: object) -> dict:
        seen.append((session_id, data))
        return {"event": "echo", "data": data}

    def _ping(session_id: str, data: object) -> str:
        return "pong"

    bridge.register_unsolicited_handler("echo", _echo)
    bridge.register_unsolicited_handler("ping", _ping)

    reply = await bridge.on_inbound_message("thread_1", {"event": "echo", "data": {"x": 1}})

    assert reply == {"event": "echo", "data": {"x": 1}}
    assert seen == [("thread_1", {"x": 1})]
    assert await bridge.on_inbound_message("thread_1", '{"event": "ping"}') == "pong"


@pytest.mark.asyncio
async def test_handler_failure_returns_generic_error() -> None:
    bridge = _bridge()

    async def _fails(session_id: str, data: object) -> None:
        raise RuntimeError("handler blew up")

    bridge.register_unsolicited_handler("explode", _fails)

    reply = await bridge.on_inbound_message("thread_1", json.dumps({"event": "explode"}))

    assert reply == INTERNAL_ERROR_REPLY


@pytest.mark.asyncio
async def test_completed_run_notifies_session() -> None:
    bridge = _bridge()
    connection = await _connect(bridge)
    run = RunState(run_id="run_1", session_id="thread_1")

    await bridge.run_completed(run, RunOutput(kind="text", text="All done"))
    await bridge.run_completed(run, RunOutput(kind="image", file_id="file_7"))
    await bridge.run_completed(run, None)

    assert connection.frames() == [
        {"type": "ASSISTANT_RESPONSE", "message": "All done"},
        {"type": "ASSISTANT_IMAGE", "fileId": "file_7"},
    ]


@pytest.mark.asyncio
async def test_failed_run_notifies_and_cancels_calls() -> None:
    bridge = _bridge()
    connection = await _connect(bridge)
    bridge.pending.register("c1", 1.0, session_id="thread_1", run_id="run_1")
    run = RunState(run_id="run_1", session_id="thread_1")

    await bridge.run_failed(run, RunFailed("rate limited"))

    assert len(bridge.pending) == 0
    assert connection.frames() == [
        {"type": "RUN_FAILED", "runId": "run_1", "code": "run_failed", "message": "The assistant run failed."}
    ]


@pytest.mark.asyncio
async def test_notify_session_result_without_connection() -> None:
    bridge = _bridge()

    assert await bridge.notify_session_result("thread_1", {"type": "ASSISTANT_RESPONSE"}) is False


@pytest.mark.asyncio
async def test_failed_registration_releases_earlier_calls(monkeypatch: pytest.MonkeyPatch) -> None:
    bridge = _bridge()
    connection = await _connect(bridge)
    resolve = bridge.router.resolve

    def _resolve(tool_name: str):
        if tool_name == "ws_broken":
            raise RuntimeError("routing table unavailable")
        return resolve(tool_name)

    monkeypatch.setattr(bridge.router, "resolve", _resolve)

    with pytest.raises(RuntimeError):
        await bridge.dispatch("thread_1", [ToolCall(call_id="a", name="ws_x"), ToolCall(call_id="b", name="ws_broken")])

    assert "a" not in bridge.pending
    assert connection.sent == []


@pytest.mark.asyncio
async def test_non_positive_batch_timeout_is_rejected() -> None:
    bridge = _bridge()

    with pytest.raises(ValueError):
        await bridge.dispatch("thread_1", [ToolCall(call_id="a", name="ws_x")], timeout_s=0)

    assert len(bridge.pending) == 0


def test_route_timeout_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ToolRoute("bad_", RouteKind.CLIENT, timeout_s=-1)
    with pytest.raises(ValueError):
        ToolCallBridge(ConnectionRegistry(), PendingCallTable(), call_timeout_s=0)


@pytest.mark.asyncio
async def test_batch_timeout_takes_precedence_over_route() -> None:
    bridge = _bridge(routes=[ToolRoute("ws_", RouteKind.CLIENT, timeout_s=10.0)], call_timeout_s=10.0)
    await _connect(bridge)

    outputs = await asyncio.wait_for(
        bridge.dispatch("thread_1", [ToolCall(call_id="c1", name="ws_x")], timeout_s=0.02),
        1.0,
    )

    assert outputs[0].code == "call_timed_out"
