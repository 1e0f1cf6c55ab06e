"""Live pricing for the guided estimation flow.

`PricingCoordinator` turns partial flow data into a `PricingResult`:
every selected service is priced by the injected oracle, missing required
fields are collected, risk and strategy adjustments are applied and a
confidence label is attached. Recomputes are debounced and published per
estimate id; see `guidedflow.core.debounce` for the ordering rules.
"""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from guidedflow.core.debounce import KeyedRecompute
from guidedflow.core.errors import GuidedFlowError, OracleUnavailable
from guidedflow.core.events import EventBus
from guidedflow.core.flow.interpret import FlowInterpreter, PricingInputs
from guidedflow.core.flow.store import fingerprint
from guidedflow.core.logging import get_logger
from guidedflow.core.results import PriceAdjustment, PricingResult, ServiceBreakdown
from guidedflow.core.scheduler import Scheduler
from guidedflow.pricing.confidence import ConfidencePolicy
from guidedflow.pricing.oracle import PricingOracle, ServiceCost

_LOGGER = get_logger(__name__)

BlockedStepsProvider = Callable[[str], Iterable[str]]


def _number(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def risk_adjustments(measurements: Mapping[str, Any]) -> list[PriceAdjustment]:
    """Height and timeline premiums applied on top of service costs."""
    out: list[PriceAdjustment] = []

    height = _number(measurements.get("height"))
    if height > 50:
        out.append(PriceAdjustment("risk", "High building risk premium", 15.0))
    elif height > 25:
        out.append(PriceAdjustment("risk", "Medium height risk premium", 8.0))

    if str(measurements.get("urgency", "")).lower() == "urgent":
        out.append(PriceAdjustment("risk", "Rush job premium", 25.0))

    return out


def strategy_adjustments(flow_data: Mapping[str, Any]) -> list[PriceAdjustment]:
    """Markup and discount entered on the pricing step."""
    pricing = flow_data.get("pricing")
    if not isinstance(pricing, Mapping):
        return []
    strategy = pricing.get("strategy")
    if not isinstance(strategy, Mapping):
        return []

    out: list[PriceAdjustment] = []
    markup = _number(strategy.get("markup"))
    if markup:
        out.append(PriceAdjustment("markup", "Profit margin", markup))
    discount = _number(strategy.get("discount"))
    if discount:
        out.append(PriceAdjustment("discount", "Customer discount", -discount))
    return out


class PricingCoordinator(KeyedRecompute[PricingResult]):
    """Debounced recompute + fan-out of pricing results.

    Example:
        coordinator = PricingCoordinator(RateTableOracle())
        unsubscribe = coordinator.subscribe("est-1", render_price)
        await coordinator.update_pricing(flow_data, "est-1")           # debounced
        result = await coordinator.update_pricing(flow_data, "est-1", immediate=True)
        unsubscribe()
    """

    def __init__(
        self,
        oracle: PricingOracle,
        *,
        interpreter: FlowInterpreter | None = None,
        policy: ConfidencePolicy | None = None,
        debounce_seconds: float = 1.0,
        oracle_timeout_seconds: float = 10.0,
        include_risk_adjustments: bool = True,
        blocked_steps: BlockedStepsProvider | None = None,
        scheduler: Scheduler | None = None,
        bus: EventBus | None = None,
    ) -> None:
        super().__init__(
            name="pricing",
            debounce_seconds=debounce_seconds,
            stamp_of=lambda r: r.computed_at,
            scheduler=scheduler,
            bus=bus,
        )
        self.oracle = oracle
        self.interpreter = interpreter or FlowInterpreter()
        self.policy = policy or ConfidencePolicy()
        self.oracle_timeout_seconds = oracle_timeout_seconds
        self.include_risk_adjustments = include_risk_adjustments
        self._blocked_steps = blocked_steps

    async def update_pricing(
        self,
        flow_data: Mapping[str, Any],
        estimate_id: str,
        changed_step_id: str | None = None,
        immediate: bool = False,
    ) -> PricingResult | None:
        """Schedule (or, with `immediate`, run) a recompute.

        Returns the published result for immediate calls, None otherwise or
        when a newer trigger superseded this one.

        Raises:
            OracleUnavailable: immediate call whose oracle request failed.
        """
        return await self._update(flow_data, estimate_id, changed_step_id, immediate)

    async def recalculate(self, flow_data: Mapping[str, Any], estimate_id: str) -> PricingResult | None:
        return await self.update_pricing(flow_data, estimate_id, immediate=True)

    async def calculate_real_time_pricing(
        self, flow_data: Mapping[str, Any], estimate_id: str | None = None
    ) -> PricingResult:
        """Compute now, bypassing debounce and subscribers."""
        data = copy.deepcopy(dict(flow_data))
        fp = fingerprint(data)
        result = await self._compute(data, estimate_id or "", None, fp)
        if estimate_id:
            state = self._state(estimate_id)
            last = state.last_result
            if last is None or result.computed_at >= last.computed_at:
                state.last_result = result
        return result

    def _wrap_failure(self, estimate_id: str, exc: Exception) -> GuidedFlowError:
        return OracleUnavailable(estimate_id, exc)

    async def _compute(
        self, data: dict[str, Any], estimate_id: str, changed_step: str | None, fp: str
    ) -> PricingResult:
        inputs = self.interpreter.extract(data)
        costs = await self._price_services(inputs, estimate_id)

        breakdown: list[ServiceBreakdown] = []
        missing: dict[str, None] = {}
        subtotal = 0.0
        for service, cost in zip(inputs.services, costs, strict=True):
            for name in cost.required_fields_missing:
                missing.setdefault(name, None)
            priced = cost.cost is not None
            amount = float(cost.cost) if priced else 0.0
            subtotal += amount
            breakdown.append(
                ServiceBreakdown(
                    service=service,
                    cost=round(amount, 2),
                    required_fields_missing=tuple(cost.required_fields_missing),
                    priced=priced,
                )
            )

        adjustments = strategy_adjustments(data)
        if self.include_risk_adjustments:
            adjustments.extend(risk_adjustments(inputs.measurements))
        total = subtotal
        for adj in adjustments:
            total *= 1 + adj.percent / 100.0

        blocked: Iterable[str] = ()
        if self._blocked_steps is not None and estimate_id:
            blocked = tuple(self._blocked_steps(estimate_id))

        confidence = self.policy.classify(
            breakdown,
            missing,
            source_steps=inputs.source_steps,
            blocked_steps=blocked,
            services_explicit=inputs.services_explicit,
        )

        result = PricingResult(
            total_cost=round(total, 2),
            service_breakdown=tuple(breakdown),
            adjustments=tuple(adjustments),
            confidence=confidence,
            missing_data=tuple(missing),
            computed_at=self.scheduler.now(),
            source_steps_used=inputs.source_steps,
            fingerprint=fp,
        )
        _LOGGER.verbose(
            f"pricing computed for {estimate_id}: total={result.total_cost:.2f} "
            f"confidence={confidence.value} missing={list(result.missing_data)}"
        )
        return result

    async def _price_services(self, inputs: PricingInputs, estimate_id: str) -> list[ServiceCost]:
        calls = asyncio.gather(
            *(self.oracle.compute_service_cost(s, inputs.measurements) for s in inputs.services)
        )
        try:
            if self.oracle_timeout_seconds > 0:
                return list(await asyncio.wait_for(calls, timeout=self.oracle_timeout_seconds))
            return list(await calls)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            _LOGGER.warning(f"pricing oracle failed for {estimate_id}: {type(e).__name__}: {e}")
            raise OracleUnavailable(estimate_id, e) from e
