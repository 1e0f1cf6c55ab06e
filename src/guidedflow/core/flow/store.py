"""In-memory state of one in-progress estimate."""

from __future__ import annotations

import copy
import hashlib
import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from guidedflow.core.errors import GuidedFlowError
from guidedflow.core.logging import get_logger

_logger = get_logger(__name__)

GuidedFlowData = dict[str, Any]


def fingerprint(flow_data: Mapping[str, Any]) -> str:
    """Structural hash of flow data.

    Key order does not matter; values must be JSON-serializable.
    """
    try:
        canonical = json.dumps(
            flow_data, sort_keys=True, separators=(",", ":"), ensure_ascii=True, allow_nan=False
        )
    except (TypeError, ValueError) as e:
        raise GuidedFlowError(
            f"Flow data is not JSON-serializable: {e}",
            "Step payloads must contain only dicts, lists, strings, numbers, bools and None",
        ) from e
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class FlowSnapshot:
    """Point-in-time copy of the store; never mutated by readers."""

    estimate_id: str
    data: GuidedFlowData
    current_step: int
    version: int
    fingerprint: str


class FlowDataStore:
    """Current step payloads for one estimate.

    Only the UI-facing setters mutate the store. Readers take snapshots.
    """

    def __init__(
        self,
        estimate_id: str,
        data: Mapping[str, Any] | None = None,
        current_step: int = 1,
    ) -> None:
        self.estimate_id = estimate_id
        self._data: GuidedFlowData = copy.deepcopy(dict(data or {}))
        self._current_step = current_step
        self._version = 0
        self._listeners: list[Callable[[str | None], None]] = []

    @property
    def version(self) -> int:
        return self._version

    @property
    def current_step(self) -> int:
        return self._current_step

    def get_step(self, step_id: str) -> Any | None:
        return copy.deepcopy(self._data.get(step_id))

    def step_ids(self) -> list[str]:
        return list(self._data.keys())

    def set_step(self, step_id: str, payload: Any) -> None:
        self._data[step_id] = copy.deepcopy(payload)
        self._changed(step_id)

    def remove_step(self, step_id: str) -> None:
        if step_id in self._data:
            del self._data[step_id]
            self._changed(step_id)

    def set_current_step(self, step: int) -> None:
        if step < 1:
            raise GuidedFlowError(f"Step index must be >= 1, got {step}")
        self._current_step = step

    def load(self, data: Mapping[str, Any], current_step: int) -> None:
        """Replace the whole state (used when a draft is recovered)."""
        self._data = copy.deepcopy(dict(data))
        self._current_step = current_step
        self._changed(None)

    def snapshot(self) -> FlowSnapshot:
        data = copy.deepcopy(self._data)
        return FlowSnapshot(
            estimate_id=self.estimate_id,
            data=data,
            current_step=self._current_step,
            version=self._version,
            fingerprint=fingerprint(data),
        )

    def subscribe(self, listener: Callable[[str | None], None]) -> Callable[[], None]:
        """Register a change listener; it receives the changed step id (None = all)."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _changed(self, step_id: str | None) -> None:
        self._version += 1
        for listener in list(self._listeners):
            try:
                listener(step_id)
            except Exception as e:
                _logger.error(
                    f"flow listener failed for {self.estimate_id} step={step_id}: "
                    f"{type(e).__name__}: {e}"
                )
