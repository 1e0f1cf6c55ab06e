"""Debounced, single-flight recomputation keyed by estimate id.

Shared machinery of the pricing and validation coordinators:

- non-immediate triggers inside the debounce window collapse into one
  recompute that uses the latest input;
- every trigger bumps a per-key generation; a run captures the generation it
  was started for and discards its result if a newer trigger arrived while it
  was suspended;
- a per-key lock keeps at most one recompute in flight;
- failures go to the direct caller (immediate runs) or the log (timer runs),
  never to subscribers.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar

from guidedflow.core.diagnostics import duration_ms, emit_diag
from guidedflow.core.errors import GuidedFlowError
from guidedflow.core.events import EventBus, ResultChannel, Subscription
from guidedflow.core.flow.store import fingerprint
from guidedflow.core.logging import get_logger
from guidedflow.core.scheduler import LoopScheduler, Scheduler, TimerHandle

_LOGGER = get_logger(__name__)

R = TypeVar("R")


@dataclass
class _KeyState(Generic[R]):
    generation: int = 0
    pending_data: dict[str, Any] = field(default_factory=dict)
    pending_fp: str | None = None
    changed_step: str | None = None
    timer: TimerHandle | None = None
    last_input_fp: str | None = None
    last_result: R | None = None
    last_error: GuidedFlowError | None = None
    in_flight: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class KeyedRecompute(Generic[R]):
    """Base class; subclasses implement `_compute` and `_wrap_failure`."""

    def __init__(
        self,
        *,
        name: str,
        debounce_seconds: float,
        stamp_of: Callable[[R], datetime],
        scheduler: Scheduler | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.name = name
        self.debounce_seconds = debounce_seconds
        self.scheduler = scheduler or LoopScheduler()
        self.bus = bus
        self.channel: ResultChannel[R] = ResultChannel(name, stamp_of)
        self._keys: dict[str, _KeyState[R]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self.recompute_count = 0

    async def _compute(
        self, data: dict[str, Any], estimate_id: str, changed_step: str | None, fp: str
    ) -> R:
        raise NotImplementedError

    def _wrap_failure(self, estimate_id: str, exc: Exception) -> GuidedFlowError:
        return GuidedFlowError(f"{self.name} recompute failed for '{estimate_id}': {exc}")

    def subscribe(self, estimate_id: str, callback: Callable[[R], None]) -> Subscription[R]:
        """Register `callback` for every new result of `estimate_id`.

        The returned handle is also the unsubscribe function.
        """
        return self.channel.subscribe(estimate_id, callback)

    def last_result(self, estimate_id: str) -> R | None:
        state = self._keys.get(estimate_id)
        return state.last_result if state else None

    def last_error(self, estimate_id: str) -> GuidedFlowError | None:
        state = self._keys.get(estimate_id)
        return state.last_error if state else None

    def is_pending(self, estimate_id: str) -> bool:
        state = self._keys.get(estimate_id)
        return bool(state and (state.timer is not None or state.in_flight))

    def _state(self, estimate_id: str) -> _KeyState[R]:
        state = self._keys.get(estimate_id)
        if state is None:
            state = _KeyState()
            self._keys[estimate_id] = state
        return state

    async def _update(
        self,
        flow_data: Mapping[str, Any],
        estimate_id: str,
        changed_step: str | None,
        immediate: bool,
    ) -> R | None:
        state = self._state(estimate_id)
        data = copy.deepcopy(dict(flow_data))
        fp = fingerprint(data)

        if not immediate:
            if state.timer is not None and fp == state.pending_fp:
                _LOGGER.debug(f"{self.name}: identical input already scheduled for {estimate_id}")
                return None
            if state.timer is None and fp == state.last_input_fp:
                _LOGGER.debug(f"{self.name}: identical input already computed for {estimate_id}")
                return None

        state.generation += 1
        state.pending_data = data
        state.pending_fp = fp
        state.changed_step = changed_step
        self._cancel_timer(state)

        if immediate:
            return await self._run(estimate_id, state.generation)

        state.timer = self.scheduler.call_later(
            self.debounce_seconds, lambda: self._fire(estimate_id)
        )
        _LOGGER.verbose(
            f"{self.name}: recompute scheduled for {estimate_id} "
            f"in {self.debounce_seconds:.3f}s (generation={state.generation})"
        )
        return None

    def _cancel_timer(self, state: _KeyState[R]) -> None:
        if state.timer is not None:
            state.timer.cancel()
            state.timer = None

    def _fire(self, estimate_id: str) -> None:
        state = self._state(estimate_id)
        state.timer = None
        task = asyncio.get_running_loop().create_task(
            self._run_from_timer(estimate_id, state.generation)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_from_timer(self, estimate_id: str, stamp: int) -> None:
        try:
            await self._run(estimate_id, stamp)
        except GuidedFlowError as e:
            _LOGGER.warning(f"{self.name}: debounced recompute failed: {e.message}")

    async def _run(self, estimate_id: str, stamp: int) -> R | None:
        state = self._state(estimate_id)
        async with state.lock:
            if stamp != state.generation:
                _LOGGER.debug(
                    f"{self.name}: generation {stamp} superseded before start for {estimate_id}"
                )
                return None

            data = state.pending_data
            fp = state.pending_fp or fingerprint(data)
            state.last_input_fp = fp
            state.in_flight = True
            self.recompute_count += 1

            t0 = self.scheduler.monotonic()
            operation = f"{self.name}.recompute"
            emit_diag(
                self.bus,
                "operation.start",
                component=self.name,
                operation=operation,
                data={"estimate_id": estimate_id, "generation": stamp},
            )
            try:
                result = await self._compute(data, estimate_id, state.changed_step, fp)
            except Exception as e:
                err = e if isinstance(e, GuidedFlowError) else self._wrap_failure(estimate_id, e)
                state.last_input_fp = None
                state.last_error = err
                emit_diag(
                    self.bus,
                    "operation.end",
                    component=self.name,
                    operation=operation,
                    data={
                        "estimate_id": estimate_id,
                        "generation": stamp,
                        "status": "failed",
                        "error_type": type(err).__name__,
                        "duration_ms": duration_ms(t0, self.scheduler.monotonic()),
                    },
                )
                if err is e:
                    raise
                raise err from e
            finally:
                state.in_flight = False

            if stamp != state.generation:
                _LOGGER.debug(
                    f"{self.name}: discarded stale result for {estimate_id} "
                    f"(generation {stamp} < {state.generation})"
                )
                emit_diag(
                    self.bus,
                    "operation.end",
                    component=self.name,
                    operation=operation,
                    data={"estimate_id": estimate_id, "generation": stamp, "status": "stale"},
                )
                return None

            state.last_result = result
            state.last_error = None
            published = self.channel.publish(estimate_id, result)
            emit_diag(
                self.bus,
                "operation.end",
                component=self.name,
                operation=operation,
                data={
                    "estimate_id": estimate_id,
                    "generation": stamp,
                    "status": "ok" if published else "out_of_order",
                    "duration_ms": duration_ms(t0, self.scheduler.monotonic()),
                },
            )
            return result

    async def drain(self) -> None:
        """Wait until every timer-started recompute has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Cancel pending debounce timers. In-flight work is left to finish."""
        for state in self._keys.values():
            self._cancel_timer(state)
