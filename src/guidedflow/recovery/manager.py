"""Discovery and restoration of abandoned session drafts.

On start the manager lists the user's drafts once, offers them for recovery
and then either restores one into the flow store (`accept_recovery`) or
discards them all (`decline_recovery`). A draft that fails to load is
reported and dropped from the list without affecting the others.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from guidedflow.core.drafts.model import (
    DraftProgress,
    DraftSummary,
    Principal,
    SessionDraft,
    as_utc,
)
from guidedflow.core.drafts.store import DraftStore
from guidedflow.core.errors import (
    DraftNotFoundError,
    GuidedFlowError,
    RecoveryCorrupted,
    StateTransitionError,
)
from guidedflow.core.events import EventBus
from guidedflow.core.flow.dependencies import DEFAULT_STEP_ORDER
from guidedflow.core.flow.store import FlowDataStore
from guidedflow.core.logging import get_logger
from guidedflow.core.scheduler import LoopScheduler, Scheduler, TimerHandle

_LOGGER = get_logger(__name__)


class RecoveryPhase(StrEnum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    IDLE = "idle"
    RECOVERY_PENDING = "recovery_pending"
    RECOVERED = "recovered"


_ALLOWED_TRANSITIONS: dict[RecoveryPhase, set[RecoveryPhase]] = {
    RecoveryPhase.UNINITIALIZED: {RecoveryPhase.INITIALIZING},
    RecoveryPhase.INITIALIZING: {RecoveryPhase.IDLE, RecoveryPhase.RECOVERY_PENDING},
    RecoveryPhase.IDLE: {RecoveryPhase.INITIALIZING, RecoveryPhase.RECOVERED},
    RecoveryPhase.RECOVERY_PENDING: {
        RecoveryPhase.INITIALIZING,
        RecoveryPhase.RECOVERED,
        RecoveryPhase.IDLE,
    },
    RecoveryPhase.RECOVERED: {RecoveryPhase.IDLE},
}


@dataclass(frozen=True)
class RecoveryOptions:
    """Per-call overrides; None means "use the manager's setting"."""

    max_draft_age_hours: float | None = None
    auto_cleanup: bool | None = None
    max_recovery_attempts: int | None = None


@dataclass(frozen=True)
class RecoveryState:
    phase: RecoveryPhase
    has_recoverable_sessions: bool
    available_drafts: tuple[DraftSummary, ...] = ()
    errors: tuple[GuidedFlowError, ...] = ()
    last_recovery_check: datetime | None = None
    current_session: SessionDraft | None = field(default=None, compare=False)


CommitHook = Callable[[SessionDraft], Awaitable[None]]


class RecoveryManager:
    """Recovery of the drafts that belong to `principal.user_id`.

    Example:
        manager = RecoveryManager(store, principal, flow_store)
        state = await manager.initialize()
        if state.has_recoverable_sessions:
            await manager.accept_recovery(state.available_drafts[0].id)
    """

    def __init__(
        self,
        store: DraftStore,
        principal: Principal,
        flow_store: FlowDataStore,
        *,
        max_draft_age_hours: float = 24.0,
        auto_cleanup: bool = True,
        max_recovery_attempts: int = 3,
        cleanup_interval_seconds: float = 3600.0,
        step_order: Sequence[str] = DEFAULT_STEP_ORDER,
        on_commit: CommitHook | None = None,
        scheduler: Scheduler | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.store = store
        self.principal = principal
        self.flow_store = flow_store
        self.max_draft_age_hours = max_draft_age_hours
        self.auto_cleanup = auto_cleanup
        self.max_recovery_attempts = max_recovery_attempts
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.step_order = tuple(step_order)
        self.on_commit = on_commit
        self.scheduler = scheduler or LoopScheduler()
        self.bus = bus

        self._phase = RecoveryPhase.UNINITIALIZED
        self._drafts: list[DraftSummary] = []
        self._errors: list[GuidedFlowError] = []
        self._last_check: datetime | None = None
        self._current: SessionDraft | None = None
        self._listeners: list[Callable[[RecoveryState], None]] = []
        self._signalled = False
        self._cleanup_timer: TimerHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def phase(self) -> RecoveryPhase:
        return self._phase

    @property
    def state(self) -> RecoveryState:
        return RecoveryState(
            phase=self._phase,
            has_recoverable_sessions=bool(self._drafts),
            available_drafts=tuple(self._drafts),
            errors=tuple(self._errors),
            last_recovery_check=self._last_check,
            current_session=self._current,
        )

    def progress(self, draft: DraftSummary | SessionDraft) -> DraftProgress:
        return draft.progress(self.step_order)

    def _transition(self, new_phase: RecoveryPhase) -> None:
        if new_phase not in _ALLOWED_TRANSITIONS[self._phase]:
            raise StateTransitionError(
                f"illegal recovery transition: {self._phase.value} -> {new_phase.value}"
            )
        _LOGGER.debug(f"recovery: {self._phase.value} -> {new_phase.value}")
        self._phase = new_phase

    def on_recovery_available(self, listener: Callable[[RecoveryState], None]) -> Callable[[], None]:
        """Register a listener for the one-time "recovery available" signal."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _is_expired(self, summary: DraftSummary, max_age_hours: float, now: datetime) -> bool:
        if max_age_hours <= 0:
            return False
        return now - as_utc(summary.updated_at) > timedelta(hours=max_age_hours)

    async def initialize(self, options: RecoveryOptions | None = None) -> RecoveryState:
        """List recoverable drafts, newest first.

        Expired drafts are skipped (and deleted when auto cleanup is on).
        Drafts without step data, and drafts restored `max_recovery_attempts`
        times already, are not offered. Fires the recovery-available signal
        the first time drafts are found.
        """
        opts = options or RecoveryOptions()
        max_age = (
            opts.max_draft_age_hours
            if opts.max_draft_age_hours is not None
            else self.max_draft_age_hours
        )
        cleanup = opts.auto_cleanup if opts.auto_cleanup is not None else self.auto_cleanup
        max_attempts = (
            opts.max_recovery_attempts
            if opts.max_recovery_attempts is not None
            else self.max_recovery_attempts
        )

        self._transition(RecoveryPhase.INITIALIZING)
        try:
            summaries = await self.store.list_drafts(self.principal.user_id)

            now = self.scheduler.now()
            seen: dict[str, DraftSummary] = {}
            expired: list[DraftSummary] = []
            errors: list[GuidedFlowError] = []
            for summary in summaries:
                if summary.user_id != self.principal.user_id or summary.id in seen:
                    continue
                try:
                    is_expired = self._is_expired(summary, max_age, now)
                except (AttributeError, TypeError, ValueError) as e:
                    _LOGGER.warning(f"recovery: skipping draft {summary.id}: {e}")
                    errors.append(RecoveryCorrupted(summary.id, str(e)))
                    continue
                if is_expired:
                    expired.append(summary)
                    continue
                if not summary.has_data:
                    _LOGGER.debug(f"recovery: draft {summary.id} has no step data")
                    continue
                if 0 < max_attempts <= summary.recovery_attempts:
                    _LOGGER.debug(
                        f"recovery: draft {summary.id} reached {summary.recovery_attempts} "
                        "recovery attempt(s)"
                    )
                    continue
                seen[summary.id] = summary

            if cleanup:
                for summary in expired:
                    await self._delete_quietly(summary.id)
        except Exception:
            self._drafts = []
            self._phase = RecoveryPhase.IDLE
            raise

        self._drafts = sorted(seen.values(), key=lambda s: as_utc(s.updated_at), reverse=True)
        self._errors = errors
        self._last_check = now
        _LOGGER.info(
            f"recovery: {len(self._drafts)} recoverable draft(s) for user {self.principal.user_id}"
            + (f", {len(expired)} expired" if expired else "")
        )

        if self._drafts:
            self._transition(RecoveryPhase.RECOVERY_PENDING)
            self._signal_available()
        else:
            self._transition(RecoveryPhase.IDLE)
        return self.state

    def _signal_available(self) -> None:
        if self._signalled:
            return
        self._signalled = True
        state = self.state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                _LOGGER.error(f"recovery listener failed: {type(e).__name__}: {e}")
        if self.bus is not None:
            self.bus.publish(
                "recovery.available",
                {
                    "user_id": self.principal.user_id,
                    "draft_ids": [s.id for s in state.available_drafts],
                },
            )

    def _require_initialized(self) -> None:
        if self._phase in {RecoveryPhase.UNINITIALIZED, RecoveryPhase.INITIALIZING}:
            raise StateTransitionError(
                "Recovery manager is not initialized",
                "Call initialize() before recovering drafts",
            )

    def _forget(self, draft_id: str) -> None:
        self._drafts = [s for s in self._drafts if s.id != draft_id]
        if not self._drafts and self._phase is RecoveryPhase.RECOVERY_PENDING:
            self._transition(RecoveryPhase.IDLE)

    async def recover_session(self, draft_id: str) -> SessionDraft | None:
        """Load `draft_id` into the flow store.

        A missing or corrupted draft is recorded in `state.errors`, removed
        from the list and None is returned. A restored draft has its
        recovery attempt counted in the store.
        """
        self._require_initialized()
        try:
            draft = await self.store.get_draft(draft_id)
            if draft.user_id != self.principal.user_id:
                raise DraftNotFoundError(draft_id)
        except (DraftNotFoundError, RecoveryCorrupted) as e:
            _LOGGER.warning(f"recovery: cannot load {draft_id}: {e.message}")
            self._errors.append(e)
            self._forget(draft_id)
            return None

        self.flow_store.load(draft.data, draft.current_step)
        self._current = draft
        await self._count_attempt(draft)
        progress = self.progress(draft)
        _LOGGER.info(
            f"recovery: restored {draft_id} at step {draft.current_step} "
            f"({progress.percentage}% complete)"
        )
        return draft

    async def _count_attempt(self, draft: SessionDraft) -> None:
        counted = draft.copy()
        counted.recovery_attempts += 1
        counted.last_recovered_at = self.scheduler.now()
        try:
            await self.store.put_draft(counted)
        except Exception as e:
            # The session is restored either way; only the counter is lost.
            _LOGGER.warning(
                f"recovery: could not record attempt for {draft.id}: {type(e).__name__}: {e}"
            )

    async def accept_recovery(self, draft_id: str) -> SessionDraft | None:
        """Restore `draft_id`, commit it, then delete the origin draft."""
        draft = await self.recover_session(draft_id)
        if draft is None:
            return None

        if self.on_commit is not None:
            await self.on_commit(draft)

        self._transition(RecoveryPhase.RECOVERED)
        if draft_id != self.principal.draft_id:
            await self._delete_quietly(draft_id)
        self._drafts = [s for s in self._drafts if s.id != draft_id]
        if self.bus is not None:
            self.bus.publish("recovery.accepted", {"draft_id": draft_id})
        self._transition(RecoveryPhase.IDLE)
        return draft

    async def decline_recovery(self) -> int:
        """Discard every candidate draft. Returns how many were deleted."""
        self._require_initialized()
        deleted = 0
        for summary in list(self._drafts):
            if await self._delete_quietly(summary.id):
                deleted += 1
        self._drafts = []
        if self._phase is RecoveryPhase.RECOVERY_PENDING:
            self._transition(RecoveryPhase.IDLE)
        if self.bus is not None:
            self.bus.publish("recovery.declined", {"deleted": deleted})
        return deleted

    async def delete_draft(self, draft_id: str) -> bool:
        deleted = await self._delete_quietly(draft_id)
        self._forget(draft_id)
        return deleted

    async def _delete_quietly(self, draft_id: str) -> bool:
        try:
            return await self.store.delete_draft(draft_id)
        except Exception as e:
            _LOGGER.error(f"recovery: failed to delete draft {draft_id}: {type(e).__name__}: {e}")
            return False

    async def cleanup_expired_drafts(self) -> int:
        """Delete drafts older than `max_draft_age_hours`. Returns the count."""
        now = self.scheduler.now()
        summaries = await self.store.list_drafts(self.principal.user_id)
        count = 0
        for summary in summaries:
            if self._is_expired(summary, self.max_draft_age_hours, now):
                if await self._delete_quietly(summary.id):
                    count += 1
                self._forget(summary.id)
        if count:
            _LOGGER.info(f"recovery: cleaned up {count} expired draft(s)")
        return count

    def start_auto_cleanup(self) -> None:
        """Run `cleanup_expired_drafts` every `cleanup_interval_seconds`."""
        if self._cleanup_timer is None and self.cleanup_interval_seconds > 0:
            self._cleanup_timer = self.scheduler.call_later(
                self.cleanup_interval_seconds, self._on_cleanup_tick
            )

    def stop_auto_cleanup(self) -> None:
        if self._cleanup_timer is not None:
            self._cleanup_timer.cancel()
            self._cleanup_timer = None

    def _on_cleanup_tick(self) -> None:
        self._cleanup_timer = None
        task = asyncio.get_running_loop().create_task(self._periodic_cleanup())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self.start_auto_cleanup()

    async def _periodic_cleanup(self) -> None:
        try:
            await self.cleanup_expired_drafts()
        except Exception as e:
            _LOGGER.error(f"recovery: periodic cleanup failed: {type(e).__name__}: {e}")

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
