"""Cross-step validation rules.

Each rule reads the raw flow data (step id -> payload) and returns a
`RuleOutcome`. Rules are pure; the coordinator merges their outcomes and
turns a rule that raises into a non-blocking warning.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from guidedflow.core.flow.dependencies import DependencyGraph
from guidedflow.core.results import (
    Confidence,
    Severity,
    ValidationError,
    ValidationSuggestion,
    ValidationWarning,
)


@dataclass(frozen=True)
class RuleContext:
    graph: DependencyGraph
    changed_step: str | None = None
    area_tolerance: float = 0.1


@dataclass
class RuleOutcome:
    errors: list[ValidationError] = field(default_factory=list)
    warnings: list[ValidationWarning] = field(default_factory=list)
    suggestions: list[ValidationSuggestion] = field(default_factory=list)
    confidence: Confidence = Confidence.HIGH


RuleCheck = Callable[[Mapping[str, Any], RuleContext], RuleOutcome]


@dataclass(frozen=True)
class ValidationRule:
    id: str
    name: str
    check: RuleCheck
    depends_on: tuple[str, ...] = ()


def _get(data: Any, path: str, default: Any = None) -> Any:
    cur = data
    for part in path.split("."):
        if not isinstance(cur, Mapping) or part not in cur:
            return default
        cur = cur[part]
    return cur


def _num(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", ""))
        except ValueError:
            return 0.0
    return 0.0


def _services(data: Mapping[str, Any]) -> list[str]:
    raw = _get(data, "scope-details.selectedServices", [])
    if not isinstance(raw, list):
        return []
    return [str(s) for s in raw]


def _service_area(data: Mapping[str, Any], service: str) -> float:
    return _num(_get(data, f"takeoff.measurements.{service}.area"))


def check_service_measurements(data: Mapping[str, Any], ctx: RuleContext) -> RuleOutcome:
    """A selected service needs the area-of-work step to carry measurements."""
    out = RuleOutcome()
    services = _services(data)
    if not services:
        return out

    measurements = _get(data, "area-of-work.measurements")
    if isinstance(measurements, Mapping) and measurements:
        return out

    out.errors.append(
        ValidationError(
            step_id="area-of-work",
            field="area-of-work.measurements",
            message=f"Selected services ({', '.join(services)}) require area measurements",
            severity=Severity.ERROR,
            blocks_progression=True,
        )
    )
    out.suggestions.append(
        ValidationSuggestion(
            "Measure the work area before continuing", "area-of-work", priority="high"
        )
    )
    out.confidence = Confidence.LOW
    return out


def check_service_area_consistency(data: Mapping[str, Any], ctx: RuleContext) -> RuleOutcome:
    out = RuleOutcome()
    total_area = _num(_get(data, "area-of-work.measurements.totalArea"))

    for service in _services(data):
        area = _service_area(data, service)
        if area == 0 and total_area > 0:
            out.warnings.append(
                ValidationWarning(
                    f"{service} service selected but no specific area measured",
                    ("takeoff",),
                )
            )
        if area > total_area * (1 + ctx.area_tolerance):
            out.errors.append(
                ValidationError(
                    step_id="takeoff",
                    field=f"takeoff.measurements.{service}.area",
                    message=(
                        f"{service} area ({area:g} sq ft) exceeds total building area "
                        f"({total_area:g} sq ft)"
                    ),
                    blocks_progression=True,
                )
            )

    if out.warnings:
        out.confidence = Confidence.MEDIUM
    return out


# Hours per square foot for one crew member.
_HOURS_PER_SQFT: dict[str, tuple[float, float]] = {
    "WC": (0.02, 0.05),
    "PW": (0.01, 0.03),
    "SW": (0.015, 0.035),
    "BF": (0.03, 0.06),
    "GR": (0.05, 0.1),
}


def check_duration(data: Mapping[str, Any], ctx: RuleContext) -> RuleOutcome:
    out = RuleOutcome()
    services = _services(data)
    hours = _num(_get(data, "duration.timeline.estimatedHours"))
    crew = _num(_get(data, "duration.crew.size")) or 2.0
    total_area = _num(_get(data, "area-of-work.measurements.totalArea"))

    if hours == 0 and services:
        out.errors.append(
            ValidationError(
                step_id="duration",
                field="duration.timeline.estimatedHours",
                message="Estimated duration is required when services are selected",
                blocks_progression=True,
            )
        )

    expected_min = 0.0
    expected_max = 0.0
    for service in services:
        area = _service_area(data, service) or total_area
        lo, hi = _HOURS_PER_SQFT.get(service, (0.02, 0.05))
        expected_min += area * lo / crew
        expected_max += area * hi / crew

    if hours > 0:
        if hours < expected_min * 0.8:
            out.warnings.append(
                ValidationWarning(
                    f"Estimated duration ({hours:g}h) may be too short. "
                    f"Expected minimum: {int(-(-expected_min // 1))}h",
                    ("duration",),
                )
            )
        if hours > expected_max * 1.5:
            out.warnings.append(
                ValidationWarning(
                    f"Estimated duration ({hours:g}h) may be longer than necessary. "
                    f"Expected maximum: {int(-(-expected_max // 1))}h",
                    ("duration", "pricing"),
                    severity="low",
                )
            )

    if len(out.warnings) > 2:
        out.confidence = Confidence.LOW
    elif out.warnings:
        out.confidence = Confidence.MEDIUM
    return out


def check_equipment_access(data: Mapping[str, Any], ctx: RuleContext) -> RuleOutcome:
    out = RuleOutcome()
    height = _num(_get(data, "area-of-work.buildingDetails.height"))
    access = str(_get(data, "takeoff.equipment.access", "ladder"))

    if height > 30 and access == "ladder":
        out.errors.append(
            ValidationError(
                step_id="takeoff",
                field="takeoff.equipment.access",
                message=f"Ladder access inappropriate for {height:g}ft building. Consider lift or scaffold.",
                blocks_progression=True,
            )
        )
        out.suggestions.append(
            ValidationSuggestion(
                f"Upgrade to {'scaffold' if height > 50 else 'lift'} access",
                "takeoff",
                priority="high",
            )
        )

    if "WC" in _services(data) and height > 20 and access == "ladder":
        out.warnings.append(
            ValidationWarning(
                "Window cleaning at height requires specialized access equipment",
                ("takeoff", "duration", "expenses"),
                severity="high",
            )
        )
    return out


_SERVICE_PREREQUISITES: dict[str, tuple[str, ...]] = {
    "GR": ("WC",),
    "FR": ("WC",),
    "PWS": ("PW",),
}


def check_service_dependencies(data: Mapping[str, Any], ctx: RuleContext) -> RuleOutcome:
    out = RuleOutcome()
    selected = set(_services(data))
    for service, prereqs in _SERVICE_PREREQUISITES.items():
        if service not in selected:
            continue
        for dep in prereqs:
            if dep not in selected:
                out.warnings.append(
                    ValidationWarning(
                        f"{service} typically requires {dep} service", ("scope-details",)
                    )
                )
    return out


_BUDGET_NUMBER = re.compile(r"\d+(?:,\d{3})*")


def parse_budget(text: Any) -> float | None:
    """Upper bound of a budget string such as "$5,000-$10,000"."""
    if isinstance(text, int | float) and not isinstance(text, bool):
        return float(text)
    if not isinstance(text, str):
        return None
    numbers = _BUDGET_NUMBER.findall(text)
    if not numbers:
        return None
    return float(numbers[-1].replace(",", ""))


def check_budget(data: Mapping[str, Any], ctx: RuleContext) -> RuleOutcome:
    """Compare the price entered on the pricing step with the customer budget."""
    out = RuleOutcome()
    budget = parse_budget(_get(data, "initial-contact.aiExtractedData.requirements.budget"))
    price = _num(_get(data, "pricing.strategy.totalPrice"))
    if budget is None or budget <= 0 or price <= 0:
        return out

    if price > budget * 1.2:
        out.warnings.append(
            ValidationWarning(
                f"Proposed price (${price:,.0f}) exceeds customer budget (~${budget:,.0f})",
                ("pricing",),
                severity="high",
            )
        )
        out.suggestions.append(
            ValidationSuggestion(
                "Optimize services to meet budget constraints", "scope-details", priority="high"
            )
        )
        out.confidence = Confidence.MEDIUM
    return out


def check_timeline(data: Mapping[str, Any], ctx: RuleContext) -> RuleOutcome:
    out = RuleOutcome()
    urgency = _get(data, "initial-contact.aiExtractedData.timeline.urgency")
    hours = _num(_get(data, "duration.timeline.estimatedHours"))
    crew = _num(_get(data, "duration.crew.size")) or 2.0

    if urgency == "urgent" and hours > 16:
        out.warnings.append(
            ValidationWarning(
                "Customer requires urgent completion but estimated duration is substantial",
                ("duration",),
                severity="high",
            )
        )
        out.suggestions.append(
            ValidationSuggestion(
                f"Increase crew size to {int(-(-crew * 1.5 // 1))} to meet urgent timeline",
                "duration",
            )
        )
    return out


def check_downstream_invalidation(data: Mapping[str, Any], ctx: RuleContext) -> RuleOutcome:
    """Warn (without blocking) that already-filled steps may need review."""
    out = RuleOutcome()
    if not ctx.changed_step:
        return out
    affected = tuple(
        s for s in ctx.graph.downstream_of(ctx.changed_step) if s in data and data[s]
    )
    if affected:
        out.warnings.append(
            ValidationWarning(
                f"Changes to {ctx.changed_step} may invalidate: {', '.join(affected)}",
                affected,
                severity="low",
            )
        )
    return out


DEFAULT_RULES: tuple[ValidationRule, ...] = (
    ValidationRule(
        "service-measurements",
        "Service Measurements Present",
        check_service_measurements,
        ("scope-details", "area-of-work"),
    ),
    ValidationRule(
        "service-area-consistency",
        "Service Area Consistency",
        check_service_area_consistency,
        ("scope-details", "area-of-work", "takeoff"),
    ),
    ValidationRule(
        "duration-feasibility",
        "Duration Feasibility",
        check_duration,
        ("scope-details", "area-of-work", "takeoff", "duration"),
    ),
    ValidationRule(
        "equipment-access",
        "Equipment Access",
        check_equipment_access,
        ("area-of-work", "takeoff"),
    ),
    ValidationRule(
        "service-dependencies",
        "Service Dependencies",
        check_service_dependencies,
        ("scope-details",),
    ),
    ValidationRule(
        "budget-feasibility",
        "Budget Feasibility",
        check_budget,
        ("initial-contact", "pricing"),
    ),
    ValidationRule(
        "timeline-constraints",
        "Timeline Constraints",
        check_timeline,
        ("initial-contact", "duration"),
    ),
    ValidationRule(
        "downstream-invalidation",
        "Downstream Invalidation",
        check_downstream_invalidation,
    ),
)
