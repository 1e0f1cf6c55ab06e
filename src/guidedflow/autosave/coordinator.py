"""Autosave of the in-progress session as a single draft.

Writes are single-flight: while one `put_draft` is running, every other
non-immediate save joins it instead of starting a second write. Edits only
mark the session dirty and arm a tick; the tick (or an immediate save)
performs the actual write.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from guidedflow.core.diagnostics import duration_ms, emit_diag
from guidedflow.core.drafts.model import Principal, SaveReason, SessionDraft
from guidedflow.core.drafts.store import DraftStore
from guidedflow.core.errors import SaveFailed, StateTransitionError
from guidedflow.core.events import EventBus
from guidedflow.core.logging import get_logger
from guidedflow.core.scheduler import LoopScheduler, Scheduler, TimerHandle

_LOGGER = get_logger(__name__)


class SaveState(StrEnum):
    CLEAN = "clean"
    DIRTY = "dirty"
    SAVING = "saving"


_ALLOWED_TRANSITIONS: dict[SaveState, set[SaveState]] = {
    SaveState.CLEAN: {SaveState.DIRTY, SaveState.SAVING},
    SaveState.DIRTY: {SaveState.DIRTY, SaveState.SAVING},
    SaveState.SAVING: {SaveState.CLEAN, SaveState.DIRTY},
}


@dataclass(frozen=True)
class AutoSaveStatus:
    state: SaveState
    last_saved_at: datetime | None
    last_version: int
    last_error: SaveFailed | None
    save_count: int


class AutoSaveCoordinator:
    """Draft autosave for one session (`principal.draft_id`)."""

    def __init__(
        self,
        store: DraftStore,
        principal: Principal,
        *,
        interval_seconds: float = 30.0,
        scheduler: Scheduler | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.store = store
        self.principal = principal
        self.interval_seconds = interval_seconds
        self.scheduler = scheduler or LoopScheduler()
        self.bus = bus

        self._state = SaveState.CLEAN
        self._candidate: tuple[dict[str, Any], int] | None = None
        self._edited_while_saving = False
        self._timer: TimerHandle | None = None
        self._tick_waiter: asyncio.Future[bool] | None = None
        self._in_flight: asyncio.Future[bool] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

        self._created_at: datetime | None = None
        self._last_saved_at: datetime | None = None
        self._last_version = 0
        self._last_error: SaveFailed | None = None
        self.save_count = 0

    @property
    def draft_id(self) -> str:
        return self.principal.draft_id

    @property
    def state(self) -> SaveState:
        return self._state

    @property
    def last_error(self) -> SaveFailed | None:
        return self._last_error

    @property
    def status(self) -> AutoSaveStatus:
        return AutoSaveStatus(
            state=self._state,
            last_saved_at=self._last_saved_at,
            last_version=self._last_version,
            last_error=self._last_error,
            save_count=self.save_count,
        )

    def _transition(self, new_state: SaveState) -> None:
        if new_state not in _ALLOWED_TRANSITIONS[self._state]:
            raise StateTransitionError(
                f"illegal autosave transition: {self._state.value} -> {new_state.value}"
            )
        self._state = new_state

    def set_current_session(self, data: Mapping[str, Any], current_step: int) -> None:
        """Record the latest session state and arm the autosave tick.

        Recording the state that is already saved (or being saved) is a no-op.
        """
        candidate = (copy.deepcopy(dict(data)), current_step)
        if candidate == self._candidate and self._state is not SaveState.DIRTY:
            return
        self._candidate = candidate
        if self._state is SaveState.SAVING:
            self._edited_while_saving = True
        else:
            self._transition(SaveState.DIRTY)
        self._arm_tick()

    def _arm_tick(self) -> None:
        if self._timer is None:
            self._timer = self.scheduler.call_later(self.interval_seconds, self._on_tick)

    def _cancel_tick(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_tick(self) -> None:
        self._timer = None
        task = asyncio.get_running_loop().create_task(self._tick_write())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _tick_write(self) -> None:
        await self._wait_idle()
        if self._state is SaveState.DIRTY:
            ok = await self._write(SaveReason.AUTO_SAVE)
        else:
            ok = self._last_error is None
        self._resolve_tick_waiter(ok)

    async def _wait_idle(self) -> None:
        # Another waiter may start a write between our wake-up and our turn.
        while self._in_flight is not None:
            await asyncio.shield(self._in_flight)

    def _resolve_tick_waiter(self, ok: bool) -> None:
        waiter = self._tick_waiter
        self._tick_waiter = None
        if waiter is not None and not waiter.done():
            waiter.set_result(ok)

    async def save_draft(
        self, data: Mapping[str, Any], current_step: int, immediate: bool = False
    ) -> bool:
        """Save the session.

        Non-immediate saves join the write in flight, or else the next tick
        write, so concurrent callers share one write and one result.
        Immediate saves cancel the tick, wait for any write in flight and
        then write. Returns False on failure (see `last_error`).
        """
        self.set_current_session(data, current_step)

        if not immediate:
            if self._in_flight is not None:
                _LOGGER.debug(f"autosave: joining in-flight write for {self.draft_id}")
                return await asyncio.shield(self._in_flight)
            if self._state is SaveState.CLEAN:
                return True
            if self._tick_waiter is None:
                self._tick_waiter = asyncio.get_running_loop().create_future()
            else:
                _LOGGER.debug(f"autosave: joining pending tick write for {self.draft_id}")
            return await asyncio.shield(self._tick_waiter)

        self._cancel_tick()
        await self._wait_idle()
        ok = await self._write(SaveReason.MANUAL_SAVE)
        self._resolve_tick_waiter(ok)
        return ok

    async def save_and_exit(self, data: Mapping[str, Any], current_step: int) -> bool:
        return await self.save_draft(data, current_step, immediate=True)

    async def _write(self, reason: SaveReason) -> bool:
        if self._candidate is None:
            return True

        loop = asyncio.get_running_loop()
        in_flight: asyncio.Future[bool] = loop.create_future()
        self._transition(SaveState.SAVING)
        self._in_flight = in_flight
        self._edited_while_saving = False

        data, current_step = self._candidate
        now = self.scheduler.now()
        if self._created_at is None:
            self._created_at = now
        draft = SessionDraft(
            id=self.draft_id,
            estimate_id=self.principal.estimate_id,
            user_id=self.principal.user_id,
            data=copy.deepcopy(data),
            current_step=current_step,
            created_at=self._created_at,
            updated_at=now,
            save_reason=reason,
            version=self._last_version,
        )

        t0 = self.scheduler.monotonic()
        emit_diag(
            self.bus,
            "operation.start",
            component="autosave",
            operation="autosave.write",
            data={"draft_id": self.draft_id, "reason": reason.value},
        )
        ok = False
        try:
            stored = await self.store.put_draft(draft)
            if stored.version <= self._last_version:
                raise SaveFailed(
                    self.draft_id,
                    f"version conflict (stored {stored.version}, last {self._last_version})",
                )
        except Exception as e:
            err = e if isinstance(e, SaveFailed) else SaveFailed(
                self.draft_id, f"{type(e).__name__}: {e}"
            )
            self._last_error = err
            self._transition(SaveState.DIRTY)
            _LOGGER.warning(f"autosave failed: {err.message}")
            if self.bus is not None:
                self.bus.publish(
                    "autosave.failed", {"draft_id": self.draft_id, "reason": err.reason}
                )
        else:
            ok = True
            self.save_count += 1
            self._last_version = stored.version
            self._last_saved_at = stored.updated_at
            self._last_error = None
            if self._edited_while_saving:
                self._transition(SaveState.DIRTY)
                self._arm_tick()
            else:
                self._transition(SaveState.CLEAN)
            _LOGGER.verbose(
                f"autosave: saved {self.draft_id} version={stored.version} reason={reason.value}"
            )
            if self.bus is not None:
                self.bus.publish(
                    "autosave.saved",
                    {"draft_id": self.draft_id, "version": stored.version, "reason": reason.value},
                )
        finally:
            if self._state is SaveState.SAVING:
                # Cancelled mid-write.
                self._transition(SaveState.DIRTY)
            self._in_flight = None
            in_flight.set_result(ok)

        emit_diag(
            self.bus,
            "operation.end",
            component="autosave",
            operation="autosave.write",
            data={
                "draft_id": self.draft_id,
                "status": "ok" if ok else "failed",
                "duration_ms": duration_ms(t0, self.scheduler.monotonic()),
            },
        )
        return ok

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Cancel the pending tick; callers waiting on it are told the save did not happen."""
        self._cancel_tick()
        self._resolve_tick_waiter(False)
