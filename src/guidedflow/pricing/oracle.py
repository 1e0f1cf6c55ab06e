"""Pricing oracle contract and a rate-table reference oracle.

The engine only relies on `PricingOracle`. `RateTableOracle` prices a
service as `quantity * rate * height factor` (an area, a frame count or a
number of parking spaces) from a small table that can be overridden with a
YAML file:

    WC:
      rate: 0.35
      area_field: glassArea
      required: [glassArea, stories]

Services missing from the table are left unpriced.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import yaml

from guidedflow.core.errors import ConfigError
from guidedflow.core.logging import get_logger

_LOGGER = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ServiceCost:
    """Oracle answer for one service. `cost` is None when it cannot be priced."""

    cost: float | None
    required_fields_missing: tuple[str, ...] = ()


class PricingOracle(Protocol):
    async def compute_service_cost(
        self, service: str, measurements: Mapping[str, Any]
    ) -> ServiceCost: ...


@dataclass(frozen=True, slots=True)
class ServiceRate:
    rate: float
    area_field: str
    required: tuple[str, ...]
    # Fields that may fall back to a default instead of blocking the price.
    defaults: tuple[tuple[str, float], ...] = ()


DEFAULT_RATES: dict[str, ServiceRate] = {
    "WC": ServiceRate(0.35, "glassArea", ("glassArea", "stories"), (("stories", 1.0),)),
    "GR": ServiceRate(1.25, "glassArea", ("glassArea", "stories"), (("stories", 1.0),)),
    "PW": ServiceRate(0.25, "area", ("area",)),
    "PWS": ServiceRate(0.40, "area", ("area",)),
    "SW": ServiceRate(0.30, "area", ("area", "stories"), (("stories", 1.0),)),
    "BF": ServiceRate(0.45, "area", ("area",)),
    "HD": ServiceRate(0.37, "area", ("area",)),
    "FC": ServiceRate(0.09, "area", ("area",)),
    "GRC": ServiceRate(1.75, "area", ("area",)),
    "FR": ServiceRate(25.0, "numberOfFrames", ("numberOfFrames",)),
    "PD": ServiceRate(15.0, "spaces", ("spaces",)),
}


def _height_factor(stories: float) -> float:
    # Lifts and rope access above a few floors.
    if stories > 10:
        return 1.5
    if stories > 4:
        return 1.25
    if stories > 2:
        return 1.1
    return 1.0


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


class RateTableOracle:
    """In-process oracle backed by a per-service rate table."""

    def __init__(self, rates: Mapping[str, ServiceRate] | None = None) -> None:
        self.rates = dict(rates or DEFAULT_RATES)

    @classmethod
    def from_yaml(cls, path: Path) -> RateTableOracle:
        try:
            raw = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load rate table from {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"Rate table {path} must be a mapping of service -> rate")

        rates: dict[str, ServiceRate] = {}
        for service, entry in raw.items():
            if not isinstance(entry, dict) or "rate" not in entry:
                raise ConfigError(f"Rate table entry '{service}' needs at least a 'rate'")
            area_field = str(entry.get("area_field", "area"))
            defaults = entry.get("defaults") or {}
            rates[str(service)] = ServiceRate(
                rate=float(entry["rate"]),
                area_field=area_field,
                required=tuple(str(f) for f in entry.get("required", [area_field])),
                defaults=tuple((str(k), float(v)) for k, v in dict(defaults).items()),
            )
        return cls(rates)

    async def compute_service_cost(
        self, service: str, measurements: Mapping[str, Any]
    ) -> ServiceCost:
        entry = self.rates.get(service)
        if entry is None:
            _LOGGER.warning(f"no rate defined for service '{service}'; left unpriced")
            return ServiceCost(cost=None)

        missing = tuple(f for f in entry.required if _number(measurements.get(f)) is None)
        area = _number(measurements.get(entry.area_field))
        if area is None or area <= 0:
            return ServiceCost(cost=None, required_fields_missing=missing)

        fallbacks = dict(entry.defaults)
        blocking = [f for f in missing if f not in fallbacks and f != entry.area_field]
        if blocking:
            return ServiceCost(cost=None, required_fields_missing=missing)

        stories = _number(measurements.get("stories"))
        if stories is None:
            stories = fallbacks.get("stories", 1.0)
        cost = area * entry.rate * _height_factor(stories)
        return ServiceCost(cost=round(cost, 2), required_fields_missing=missing)
