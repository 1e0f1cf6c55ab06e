"""Cross-step validation with the same subscribe/update/compute shape as pricing."""

from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping
from typing import Any

from guidedflow.core.debounce import KeyedRecompute
from guidedflow.core.errors import GuidedFlowError, ValidationRejected
from guidedflow.core.events import EventBus
from guidedflow.core.flow.dependencies import DependencyGraph
from guidedflow.core.flow.store import FlowDataStore, fingerprint
from guidedflow.core.logging import get_logger
from guidedflow.core.results import (
    Confidence,
    Severity,
    ValidationError,
    ValidationResult,
    ValidationSuggestion,
    ValidationWarning,
    worst_confidence,
)
from guidedflow.core.scheduler import Scheduler
from guidedflow.validation.rules import DEFAULT_RULES, RuleContext, ValidationRule

_LOGGER = get_logger(__name__)

_SEVERITY_ORDER = {Severity.CRITICAL: 0, Severity.ERROR: 1, Severity.WARNING: 2}
_LEVEL_ORDER = {"high": 0, "medium": 1, "low": 2}


class ValidationCoordinator(KeyedRecompute[ValidationResult]):
    """Debounced cross-step validation per estimate id."""

    def __init__(
        self,
        graph: DependencyGraph | None = None,
        *,
        rules: Iterable[ValidationRule] = DEFAULT_RULES,
        debounce_seconds: float = 2.0,
        area_tolerance: float = 0.1,
        enforce_blocked_steps: bool = False,
        scheduler: Scheduler | None = None,
        bus: EventBus | None = None,
    ) -> None:
        super().__init__(
            name="validation",
            debounce_seconds=debounce_seconds,
            stamp_of=lambda r: r.last_validated,
            scheduler=scheduler,
            bus=bus,
        )
        self.graph = graph or DependencyGraph()
        self.rules = tuple(rules)
        self.area_tolerance = area_tolerance
        self.enforce_blocked_steps = enforce_blocked_steps

    async def update_validation(
        self,
        flow_data: Mapping[str, Any],
        estimate_id: str,
        changed_step_id: str | None = None,
        immediate: bool = False,
    ) -> ValidationResult | None:
        return await self._update(flow_data, estimate_id, changed_step_id, immediate)

    def validate_cross_step_data(
        self,
        flow_data: Mapping[str, Any],
        estimate_id: str | None = None,
        changed_step_id: str | None = None,
    ) -> ValidationResult:
        """Run every rule now, without debounce or publishing.

        With an `estimate_id` the result also becomes the cached last result
        (unless a newer one is already cached).
        """
        data = copy.deepcopy(dict(flow_data))
        result = self._validate(data, changed_step_id, fingerprint(data))
        if estimate_id:
            state = self._state(estimate_id)
            last = state.last_result
            if last is None or result.last_validated >= last.last_validated:
                state.last_result = result
        return result

    def blocked_steps(self, estimate_id: str) -> tuple[str, ...]:
        result = self.last_result(estimate_id)
        return result.blocked_steps if result else ()

    def request_step_transition(self, store: FlowDataStore, requested_step: int) -> int:
        """Move `store` to `requested_step` if the transition is allowed.

        Steps may only move by at most one position. With
        `enforce_blocked_steps` the flow also cannot advance past a step the
        last validation marked as blocked.

        Raises:
            ValidationRejected: transition refused; the store is unchanged.
        """
        current = store.current_step
        if requested_step < 1 or abs(requested_step - current) > 1:
            _LOGGER.warning(
                f"step transition rejected for {store.estimate_id}: {current} -> {requested_step}"
            )
            raise ValidationRejected(
                "Invalid step transition",
                "Steps can only be changed one at a time",
                current_step=current,
                requested_step=requested_step,
            )

        if self.enforce_blocked_steps and requested_step > current:
            leaving = self.graph.step_at(current)
            if leaving is not None and leaving in self.blocked_steps(store.estimate_id):
                _LOGGER.warning(
                    f"step transition rejected for {store.estimate_id}: '{leaving}' is blocked"
                )
                raise ValidationRejected(
                    f"Step '{leaving}' has blocking validation errors",
                    "Fix the highlighted fields before continuing",
                    current_step=current,
                    requested_step=requested_step,
                )

        store.set_current_step(requested_step)
        return requested_step

    async def _compute(
        self, data: dict[str, Any], estimate_id: str, changed_step: str | None, fp: str
    ) -> ValidationResult:
        return self._validate(data, changed_step, fp)

    def _wrap_failure(self, estimate_id: str, exc: Exception) -> GuidedFlowError:
        return GuidedFlowError(f"Validation failed for estimate '{estimate_id}': {exc}")

    def _validate(
        self, data: Mapping[str, Any], changed_step: str | None, fp: str
    ) -> ValidationResult:
        ctx = RuleContext(
            graph=self.graph, changed_step=changed_step, area_tolerance=self.area_tolerance
        )
        errors: list[ValidationError] = []
        warnings: list[ValidationWarning] = []
        suggestions: list[ValidationSuggestion] = []
        confidences: list[Confidence] = []

        for rule in self.rules:
            try:
                outcome = rule.check(data, ctx)
            except Exception as e:
                _LOGGER.error(f"validation rule {rule.id} failed: {type(e).__name__}: {e}")
                errors.append(
                    ValidationError(
                        step_id="system",
                        field="validation",
                        message=f'Validation rule "{rule.name}" encountered an error',
                        severity=Severity.WARNING,
                        blocks_progression=False,
                    )
                )
                continue
            errors.extend(outcome.errors)
            warnings.extend(outcome.warnings)
            suggestions.extend(outcome.suggestions)
            confidences.append(outcome.confidence)

        steps = self.graph.steps
        blocked: dict[str, None] = {}
        for err in errors:
            if err.blocks_progression and err.step_id in steps:
                blocked.setdefault(err.step_id, None)

        errors.sort(key=lambda e: _SEVERITY_ORDER[e.severity])
        warnings.sort(key=lambda w: _LEVEL_ORDER.get(w.severity, 1))
        suggestions.sort(key=lambda s: _LEVEL_ORDER.get(s.priority, 1))

        result = ValidationResult(
            errors=tuple(errors),
            warnings=tuple(warnings),
            suggestions=tuple(suggestions),
            blocked_steps=tuple(blocked),
            confidence=worst_confidence(*confidences),
            last_validated=self.scheduler.now(),
            fingerprint=fp,
        )
        _LOGGER.debug(
            f"validation: errors={len(errors)} warnings={len(warnings)} "
            f"blocked={list(result.blocked_steps)}"
        )
        return result
