"""Run-status polling state machine.

The engine offers no push notifications, so every active run gets one task
that sleeps for the poll interval, fetches the run and reacts:

- ``completed``: fetch the output, hand it to the delegate, stop.
- ``requires_action``: polling pauses while the delegate collects tool
  outputs; they are submitted and a fresh polling cycle begins.
- any other terminal status: the delegate is told the run failed, stop.
- ``queued`` / ``in_progress`` / ``cancelling``: keep polling.

A poll that raises is terminal for that run alone; it is never retried.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Protocol

from .engine import OrchestrationEngine
from .errors import BridgeError, EngineUnreachable, RunFailed
from .models import RunOutput, RunState, RunStatus, ToolCall, ToolOutput

logger = logging.getLogger("toolbridge.poller")


class RunDelegate(Protocol):
    async def run_completed(self, run: RunState, output: RunOutput | None) -> None: ...

    async def run_requires_action(self, run: RunState, calls: list[ToolCall]) -> list[ToolOutput]: ...

    async def run_failed(self, run: RunState, error: BridgeError) -> None: ...

    def run_abandoned(self, run: RunState) -> None: ...


class StatusPoller:
    def __init__(
        self,
        engine: OrchestrationEngine,
        delegate: RunDelegate,
        *,
        interval_s: float = 1.0,
        max_action_cycles: int = 25,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self._engine = engine
        self._delegate = delegate
        self._interval_s = interval_s
        self._max_action_cycles = max_action_cycles
        self._runs: dict[str, RunState] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    def get_run(self, run_id: str) -> RunState | None:
        return self._runs.get(run_id)

    def is_polling(self, run_id: str) -> bool:
        handle = self._tasks.get(run_id)
        return handle is not None and not handle.done()

    def active_runs(self) -> list[str]:
        return [run_id for run_id, handle in self._tasks.items() if not handle.done()]

    def start_polling(self, run_id: str, session_id: str, *, agent_id: str | None = None) -> RunState:
        """Begin polling ``run_id``, replacing any task already polling it."""

        state = self._runs.get(run_id)
        if state is None:
            state = RunState(run_id=run_id, session_id=session_id, agent_id=agent_id)
            self._runs[run_id] = state
        elif self._cancel_task(run_id):
            logger.info("polling_replaced", extra={"run_id": run_id, "session_id": session_id})
        state.polling = True
        self._tasks[run_id] = asyncio.create_task(self._poll(state), name=f"poll:{run_id}")
        logger.info("polling_started", extra={"run_id": run_id, "session_id": session_id})
        return state

    async def stop_polling(self, run_id: str) -> bool:
        """Stop polling ``run_id`` and discard its state. Idempotent."""

        handle = self._tasks.get(run_id)
        cancelled = self._cancel_task(run_id)
        state = self._runs.pop(run_id, None)
        if state is not None:
            state.polling = False
        if handle is not None and handle is not asyncio.current_task():
            with suppress(asyncio.CancelledError):
                await handle
        if cancelled:
            logger.info("polling_stopped", extra={"run_id": run_id})
        return cancelled

    async def close(self) -> None:
        for run_id in list(self._tasks):
            await self.stop_polling(run_id)
        self._runs.clear()

    def _cancel_task(self, run_id: str) -> bool:
        handle = self._tasks.pop(run_id, None)
        if handle is None or handle.done():
            return False
        handle.cancel()
        state = self._runs.get(run_id)
        if state is not None:
            try:
                self._delegate.run_abandoned(state)
            except Exception:
                logger.exception("run_abandon_failed", extra={"run_id": run_id})
        return True

    def _discard(self, state: RunState) -> None:
        state.polling = False
        current = asyncio.current_task()
        if self._tasks.get(state.run_id) is current:
            self._tasks.pop(state.run_id, None)
            self._runs.pop(state.run_id, None)

    async def _poll(self, state: RunState) -> None:
        try:
            while True:
                await asyncio.sleep(self._interval_s)
                try:
                    snapshot = await self._engine.get_run(state.thread_id, state.run_id)
                except BridgeError as exc:
                    await self._fail(state, exc)
                    return
                except Exception as exc:
                    await self._fail(state, EngineUnreachable(f"get_run failed: {exc}"))
                    return

                if snapshot.status != state.status:
                    logger.info(
                        "run_status_changed",
                        extra={"run_id": state.run_id, "from": state.status.value, "to": snapshot.status.value},
                    )
                state.update_status(snapshot.status)

                if snapshot.status == RunStatus.COMPLETED:
                    await self._complete(state)
                    return
                if snapshot.status.is_terminal:
                    detail = snapshot.last_error or f"run ended with status {snapshot.status.value}"
                    await self._fail(state, RunFailed(detail, extra={"status": snapshot.status.value}))
                    return
                if snapshot.status == RunStatus.REQUIRES_ACTION:
                    if not await self._act(state, snapshot.required_tool_calls):
                        return
        finally:
            self._discard(state)

    async def _act(self, state: RunState, calls: list[ToolCall]) -> bool:
        state.polling = False
        state.action_cycles += 1
        if state.action_cycles > self._max_action_cycles:
            await self._fail(state, RunFailed(f"run exceeded {self._max_action_cycles} tool-call cycles"))
            return False
        if not calls:
            await self._fail(state, RunFailed("run requires action but reported no tool calls"))
            return False
        try:
            outputs = await self._delegate.run_requires_action(state, calls)
        except BridgeError as exc:
            await self._fail(state, exc)
            return False
        except Exception as exc:
            logger.exception("tool_dispatch_failed", extra={"run_id": state.run_id})
            await self._fail(state, RunFailed(f"tool dispatch failed: {exc}"))
            return False
        try:
            await self._engine.submit_tool_outputs(state.thread_id, state.run_id, outputs)
        except BridgeError as exc:
            await self._fail(state, exc)
            return False
        except Exception as exc:
            await self._fail(state, EngineUnreachable(f"submit_tool_outputs failed: {exc}"))
            return False
        logger.info(
            "tool_outputs_submitted",
            extra={"run_id": state.run_id, "count": len(outputs), "cycle": state.action_cycles},
        )
        state.polling = True
        return True

    async def _complete(self, state: RunState) -> None:
        state.polling = False
        try:
            output = await self._engine.get_run_output(state.thread_id)
        except BridgeError as exc:
            await self._fail(state, exc)
            return
        except Exception as exc:
            await self._fail(state, EngineUnreachable(f"get_run_output failed: {exc}"))
            return
        logger.info("run_completed", extra={"run_id": state.run_id, "session_id": state.session_id})
        try:
            await self._delegate.run_completed(state, output)
        except Exception:
            logger.exception("run_completed_delegate_failed", extra={"run_id": state.run_id})

    async def _fail(self, state: RunState, error: BridgeError) -> None:
        state.polling = False
        if not state.status.is_terminal:
            state.update_status(RunStatus.FAILED)
        logger.warning(
            "run_failed",
            extra={
                "run_id": state.run_id,
                "session_id": state.session_id,
                "code": error.code,
                "error": error.message,
            },
        )
        try:
            await self._delegate.run_failed(state, error)
        except Exception:
            logger.exception("run_failed_delegate_failed", extra={"run_id": state.run_id})


__all__ = ["RunDelegate", "StatusPoller"]
