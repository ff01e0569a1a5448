"""Correlation table for tool calls awaiting a client response.

Each entry pairs a call id with a future and a deadline timer. Exactly one of
fulfil, cancel or timeout settles an entry: whichever removes it from the table
first acts, later attempts are no-ops.

The table is owned by the running event loop. No method awaits, so every
mutation is atomic with respect to other coroutines on that loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .errors import CallTimedOut, DuplicateCallId

logger = logging.getLogger("toolbridge.pending")

ResultCallback = Callable[[Any | None, BaseException | None], None]


@dataclass(slots=True, eq=False)
class PendingCall:
    call_id: str
    future: asyncio.Future[Any]
    timeout_s: float
    deadline: float
    session_id: str | None = None
    run_id: str | None = None
    on_result: ResultCallback | None = None
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.future.done()

    async def wait(self) -> Any:
        """Return the client result or raise :class:`CallTimedOut`."""

        return await asyncio.shield(self.future)


class PendingCallTable:
    def __init__(self) -> None:
        self._calls: dict[str, PendingCall] = {}

    def __len__(self) -> int:
        return len(self._calls)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._calls

    def pending_ids(self, *, run_id: str | None = None) -> list[str]:
        if run_id is None:
            return list(self._calls)
        return [call_id for call_id, entry in self._calls.items() if entry.run_id == run_id]

    def register(
        self,
        call_id: str,
        timeout_s: float,
        *,
        on_result: ResultCallback | None = None,
        session_id: str | None = None,
        run_id: str | None = None,
    ) -> PendingCall:
        if call_id in self._calls:
            raise DuplicateCallId(call_id)
        if timeout_s <= 0:
            raise ValueError("timeout_s must be positive")
        loop = asyncio.get_running_loop()
        entry = PendingCall(
            call_id=call_id,
            future=loop.create_future(),
            timeout_s=timeout_s,
            deadline=loop.time() + timeout_s,
            session_id=session_id,
            run_id=run_id,
            on_result=on_result,
        )
        entry.timer = loop.call_later(timeout_s, self._expire, entry)
        self._calls[call_id] = entry
        logger.debug(
            "pending_call_registered",
            extra={"call_id": call_id, "session_id": session_id, "run_id": run_id, "timeout_s": timeout_s},
        )
        return entry

    def fulfill(self, call_id: str, result: Any, *, session_id: str | None = None) -> bool:
        entry = self._calls.get(call_id)
        if entry is None:
            logger.info("pending_call_unknown", extra={"call_id": call_id, "session_id": session_id})
            return False
        if session_id is not None and entry.session_id is not None and entry.session_id != session_id:
            logger.warning(
                "pending_call_session_mismatch",
                extra={"call_id": call_id, "expected": entry.session_id, "session_id": session_id},
            )
            return False
        self._remove(entry)
        self._settle(entry, result, None)
        logger.debug("pending_call_fulfilled", extra={"call_id": call_id})
        return True

    def cancel(self, call_id: str) -> bool:
        entry = self._calls.get(call_id)
        if entry is None:
            return False
        self._remove(entry)
        # Releases any waiter; on_result is deliberately not invoked.
        entry.future.cancel()
        logger.debug("pending_call_cancelled", extra={"call_id": call_id})
        return True

    def cancel_run(self, run_id: str) -> list[str]:
        cancelled = [call_id for call_id in self.pending_ids(run_id=run_id) if self.cancel(call_id)]
        if cancelled:
            logger.info("pending_calls_cancelled", extra={"run_id": run_id, "count": len(cancelled)})
        return cancelled

    def cancel_all(self) -> int:
        return len([call_id for call_id in list(self._calls) if self.cancel(call_id)])

    def _remove(self, entry: PendingCall) -> None:
        self._calls.pop(entry.call_id, None)
        if entry.timer is not None:
            entry.timer.cancel()

    def _expire(self, entry: PendingCall) -> None:
        # A re-registered id owns a different entry; leave it alone.
        if self._calls.get(entry.call_id) is not entry:
            return
        self._remove(entry)
        error = CallTimedOut(entry.call_id, entry.timeout_s)
        self._settle(entry, None, error)
        logger.warning(
            "pending_call_timed_out",
            extra={"call_id": entry.call_id, "session_id": entry.session_id, "timeout_s": entry.timeout_s},
        )

    def _settle(self, entry: PendingCall, result: Any, error: BaseException | None) -> None:
        if not entry.future.done():
            if error is not None:
                entry.future.set_exception(error)
                # Callback-only entries are never awaited.
                entry.future.exception()
            else:
                entry.future.set_result(result)
        if entry.on_result is not None:
            try:
                entry.on_result(result, error)
            except Exception:
                logger.exception("pending_call_callback_failed", extra={"call_id": entry.call_id})


__all__ = ["PendingCall", "PendingCallTable", "ResultCallback"]
