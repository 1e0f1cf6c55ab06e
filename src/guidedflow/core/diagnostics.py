"""Runtime diagnostics envelope + JSONL sink.

This module provides:
- A canonical envelope schema for diagnostic events.
- `emit_diag`, the fail-safe emission entry point used by coordinators.
- An optional JSONL sink subscribed to an engine's EventBus.
"""

from __future__ import annotations

import contextlib
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from guidedflow.core.config import ConfigError, ConfigResolver
from guidedflow.core.events import EventBus
from guidedflow.core.logging import get_logger

_logger = get_logger(__name__)

_ENVELOPE_KEYS = {"event", "component", "operation", "timestamp", "data"}


def build_envelope(
    *,
    event: str,
    component: str,
    operation: str,
    data: dict[str, Any],
) -> dict[str, Any]:
    """Build the canonical diagnostics envelope.

    Schema:
        {
          "event": "<string>",
          "component": "<string>",
          "operation": "<string>",
          "timestamp": "<iso8601 utc>",
          "data": { ... }
        }
    """
    ts = datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return {
        "event": event,
        "component": component,
        "operation": operation,
        "timestamp": ts,
        "data": data,
    }


def emit_diag(
    bus: EventBus | None,
    event: str,
    *,
    component: str,
    operation: str,
    data: dict[str, Any],
) -> None:
    """Publish a diagnostics envelope. Must never affect runtime behavior."""
    if bus is None:
        return
    with contextlib.suppress(Exception):
        bus.publish(
            event,
            build_envelope(event=event, component=component, operation=operation, data=data),
        )


def duration_ms(t0: float, t1: float) -> int:
    ms = int((t1 - t0) * 1000.0)
    return 0 if ms < 0 else ms


def is_diagnostics_enabled(resolver: ConfigResolver) -> bool:
    try:
        return resolver.resolve_bool("diagnostics.enabled")
    except ConfigError as e:
        _logger.warning(f"Invalid diagnostics.enabled value; treating as disabled. {e.message}")
        return False


def _is_envelope(obj: Any) -> bool:
    return isinstance(obj, dict) and set(obj.keys()) == _ENVELOPE_KEYS


def install_jsonl_sink(bus: EventBus, *, resolver: ConfigResolver) -> bool:
    """Subscribe a JSONL writer to `bus` when diagnostics are enabled.

    Returns True when the sink was installed.
    """
    if not is_diagnostics_enabled(resolver):
        return False

    out_path = Path(str(resolver.resolve("diagnostics.path")[0]))

    def _on_any_event(event: str, data: dict[str, Any]) -> None:
        payload = (
            data
            if _is_envelope(data)
            else build_envelope(event=event, component="unknown", operation="unknown", data=data)
        )
        try:
            out_path.parent.mkdir(parents=True, exist_ok=True)
            line = json.dumps(payload, ensure_ascii=True, separators=(",", ":"), sort_keys=True, default=str)
            with out_path.open("a", encoding="utf-8") as f:
                f.write(line)
                f.write("\n")
        except Exception as e:
            _logger.warning(f"Diagnostics sink write failed: {type(e).__name__}: {e}")

    bus.subscribe_all(_on_any_event)
    return True
