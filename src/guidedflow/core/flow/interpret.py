"""Read the pricing-relevant parts out of opaque step payloads."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from guidedflow.core.flow.store import fingerprint


@dataclass(frozen=True)
class PricingInputs:
    services: tuple[str, ...]
    measurements: dict[str, Any] = field(default_factory=dict)
    # Steps that contributed at least one measurement, in flow order.
    source_steps: tuple[str, ...] = ()
    services_explicit: bool = False

    def fingerprint(self) -> str:
        """Structural hash of what the oracle and the adjustments will see."""
        return fingerprint({"services": list(self.services), "measurements": self.measurements})


class FlowInterpreter:
    """Extract the service selection and a flat measurements mapping.

    Services come from `<services_step>.selectedServices`; when the user has
    not picked any yet, `default_services` are priced instead. Measurements
    are the scalar top-level fields of every step payload (and of a nested
    `measurements` dict), later steps overriding earlier ones.
    """

    SERVICES_FIELD = "selectedServices"

    def __init__(
        self,
        services_step: str = "scope-details",
        default_services: Iterable[str] = ("WC",),
    ) -> None:
        self.services_step = services_step
        self.default_services = tuple(default_services)

    def selected_services(self, flow_data: Mapping[str, Any]) -> tuple[str, ...]:
        payload = flow_data.get(self.services_step)
        if isinstance(payload, Mapping):
            raw = payload.get(self.SERVICES_FIELD)
            if isinstance(raw, list | tuple) and raw:
                return tuple(dict.fromkeys(str(s) for s in raw))
        return ()

    def extract(self, flow_data: Mapping[str, Any]) -> PricingInputs:
        explicit = self.selected_services(flow_data)
        measurements: dict[str, Any] = {}
        sources: list[str] = []

        for step_id, payload in flow_data.items():
            if not isinstance(payload, Mapping):
                continue
            contributed = False
            for key, value in _scalar_fields(payload):
                if step_id == self.services_step and key == self.SERVICES_FIELD:
                    continue
                measurements[key] = value
                contributed = True
            if contributed:
                sources.append(step_id)

        return PricingInputs(
            services=explicit or self.default_services,
            measurements=measurements,
            source_steps=tuple(sources),
            services_explicit=bool(explicit),
        )


def _scalar_fields(payload: Mapping[str, Any]) -> list[tuple[str, Any]]:
    out: list[tuple[str, Any]] = []
    for key, value in payload.items():
        if isinstance(value, Mapping):
            if key in {"measurements", "buildingDetails", "timeline", "strategy"}:
                out.extend(_scalar_fields(value))
            continue
        if isinstance(value, list):
            continue
        if value is None:
            continue
        out.append((str(key), value))
    return out
