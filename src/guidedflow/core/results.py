"""Immutable result snapshots published by the coordinators."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class Confidence(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


_CONFIDENCE_RANK = {Confidence.HIGH: 0, Confidence.MEDIUM: 1, Confidence.LOW: 2}


def worst_confidence(*levels: Confidence) -> Confidence:
    if not levels:
        return Confidence.HIGH
    return max(levels, key=lambda c: _CONFIDENCE_RANK[c])


@dataclass(frozen=True, slots=True)
class ServiceBreakdown:
    service: str
    cost: float
    required_fields_missing: tuple[str, ...] = ()
    priced: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "cost": self.cost,
            "required_fields_missing": list(self.required_fields_missing),
            "priced": self.priced,
        }


@dataclass(frozen=True, slots=True)
class PriceAdjustment:
    kind: str  # risk | markup | discount
    description: str
    percent: float


@dataclass(frozen=True, slots=True)
class PricingResult:
    total_cost: float
    service_breakdown: tuple[ServiceBreakdown, ...]
    confidence: Confidence
    missing_data: tuple[str, ...]
    computed_at: datetime
    source_steps_used: tuple[str, ...]
    adjustments: tuple[PriceAdjustment, ...] = ()
    fingerprint: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_cost": self.total_cost,
            "service_breakdown": [s.to_dict() for s in self.service_breakdown],
            "adjustments": [
                {"kind": a.kind, "description": a.description, "percent": a.percent}
                for a in self.adjustments
            ],
            "confidence": self.confidence.value,
            "missing_data": list(self.missing_data),
            "computed_at": self.computed_at.isoformat(),
            "source_steps_used": list(self.source_steps_used),
        }


class Severity(StrEnum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class ValidationError:
    step_id: str
    field: str
    message: str
    severity: Severity = Severity.ERROR
    blocks_progression: bool = False


@dataclass(frozen=True, slots=True)
class ValidationWarning:
    message: str
    affected_steps: tuple[str, ...]
    severity: str = "medium"  # low | medium | high


@dataclass(frozen=True, slots=True)
class ValidationSuggestion:
    message: str
    target_step: str
    priority: str = "medium"  # low | medium | high


@dataclass(frozen=True, slots=True)
class ValidationResult:
    errors: tuple[ValidationError, ...]
    warnings: tuple[ValidationWarning, ...]
    suggestions: tuple[ValidationSuggestion, ...]
    blocked_steps: tuple[str, ...]
    confidence: Confidence
    last_validated: datetime
    fingerprint: str = field(default="")

    @property
    def is_valid(self) -> bool:
        return not any(e.severity in {Severity.ERROR, Severity.CRITICAL} for e in self.errors)
