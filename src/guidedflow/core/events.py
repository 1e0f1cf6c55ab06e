"""Event bus and keyed result channels.

`EventBus` carries lifecycle and diagnostics events (recovery available,
draft saved, ...). `ResultChannel` carries computed results to the
subscribers of a single estimate id and owns the delivery rules:

- subscribers of a key are called in subscription order;
- a subscriber that raises never prevents delivery to the others;
- results whose stamp is older than the last delivered stamp for the same
  key are dropped, so observers only ever see non-decreasing stamps.

Both are plain objects: create one per engine and pass it around.
"""

from __future__ import annotations

import itertools
import traceback
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar

from guidedflow.core.logging import get_logger

_logger = get_logger(__name__)

T = TypeVar("T")

_SUBSCRIPTION_IDS = itertools.count(1)


class EventBus:
    """Simple named-event pub/sub.

    Example:
        bus = EventBus()
        bus.subscribe("autosave.saved", lambda data: print(data["version"]))
        bus.publish("autosave.saved", {"version": 3})
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Callable[[dict[str, Any]], None]]] = defaultdict(list)
        self._all_subscribers: list[Callable[[str, dict[str, Any]], None]] = []

    def subscribe(self, event: str, callback: Callable[[dict[str, Any]], None]) -> None:
        self._subscribers[event].append(callback)

    def unsubscribe(self, event: str, callback: Callable[[dict[str, Any]], None]) -> None:
        subs = self._subscribers.get(event)
        if subs and callback in subs:
            subs.remove(callback)

    def subscribe_all(self, callback: Callable[[str, dict[str, Any]], None]) -> None:
        """Subscribe to all published events (diagnostics sink, etc.)."""
        self._all_subscribers.append(callback)

    def publish(self, event: str, data: dict[str, Any] | None = None) -> None:
        data = data or {}

        for cb_event in list(self._subscribers.get(event, [])):
            try:
                cb_event(data)
            except Exception as e:
                _logger.error(
                    f"Error in event handler for '{event}' (callback={cb_event}): "
                    f"{type(e).__name__}: {e}\n{traceback.format_exc()}"
                )

        for cb_all in list(self._all_subscribers):
            try:
                cb_all(event, data)
            except Exception as e:
                _logger.error(
                    f"Error in all-event handler (event='{event}', callback={cb_all}): "
                    f"{type(e).__name__}: {e}\n{traceback.format_exc()}"
                )

    def clear(self) -> None:
        self._subscribers.clear()
        self._all_subscribers.clear()


@dataclass(eq=False)
class Subscription(Generic[T]):
    """Handle for one registered callback.

    Calling the handle (or `unsubscribe()`) detaches the callback. Detaching
    twice is a no-op and never cancels work already in flight.
    """

    id: int
    estimate_id: str
    callback: Callable[[T], None]
    _detach: Callable[[Subscription[T]], None] | None = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self._detach is not None

    def unsubscribe(self) -> None:
        detach, self._detach = self._detach, None
        if detach is not None:
            detach(self)

    def __call__(self) -> None:
        self.unsubscribe()


class ResultChannel(Generic[T]):
    """Ordered fan-out of results per estimate id."""

    def __init__(self, name: str, stamp_of: Callable[[T], datetime]) -> None:
        self.name = name
        self._stamp_of = stamp_of
        self._subs: dict[str, list[Subscription[T]]] = {}
        self._last_stamp: dict[str, datetime] = {}

    def subscribe(self, estimate_id: str, callback: Callable[[T], None]) -> Subscription[T]:
        sub: Subscription[T] = Subscription(
            id=next(_SUBSCRIPTION_IDS),
            estimate_id=estimate_id,
            callback=callback,
            _detach=self._detach,
        )
        self._subs.setdefault(estimate_id, []).append(sub)
        return sub

    def _detach(self, sub: Subscription[T]) -> None:
        subs = self._subs.get(sub.estimate_id)
        if not subs:
            return
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subs.pop(sub.estimate_id, None)

    def subscriber_count(self, estimate_id: str) -> int:
        return len(self._subs.get(estimate_id, []))

    def last_stamp(self, estimate_id: str) -> datetime | None:
        return self._last_stamp.get(estimate_id)

    def publish(self, estimate_id: str, result: T) -> bool:
        """Deliver `result` to every subscriber of `estimate_id`.

        Returns False (and delivers nothing) when the result is older than
        the last delivered one for this key.
        """
        stamp = self._stamp_of(result)
        last = self._last_stamp.get(estimate_id)
        if last is not None and stamp < last:
            _logger.debug(
                f"{self.name}: dropped out-of-order result for {estimate_id} "
                f"(stamp={stamp.isoformat()} < last={last.isoformat()})"
            )
            return False
        self._last_stamp[estimate_id] = stamp

        for sub in list(self._subs.get(estimate_id, [])):
            if not sub.active:
                continue
            try:
                sub.callback(result)
            except Exception as e:
                _logger.error(
                    f"{self.name}: subscriber {sub.id} for '{estimate_id}' raised "
                    f"{type(e).__name__}: {e}\n{traceback.format_exc()}"
                )
        return True

    def clear(self) -> None:
        self._subs.clear()
        self._last_stamp.clear()
