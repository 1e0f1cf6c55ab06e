"""Composition root: one engine per editing session.

The engine owns the flow store and wires the coordinators together:

    edit_step -> FlowDataStore -> PricingCoordinator   (when pricing inputs changed)
                               -> ValidationCoordinator
                               -> AutoSaveCoordinator  (marks the session dirty)
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from guidedflow.autosave.coordinator import AutoSaveCoordinator
from guidedflow.core.config import ConfigResolver, EngineSettings
from guidedflow.core.diagnostics import install_jsonl_sink
from guidedflow.core.drafts.model import Principal, SessionDraft
from guidedflow.core.drafts.store import DraftStore, FileDraftStore
from guidedflow.core.events import EventBus, Subscription
from guidedflow.core.flow.dependencies import DependencyGraph
from guidedflow.core.flow.interpret import FlowInterpreter
from guidedflow.core.flow.store import FlowDataStore
from guidedflow.core.logging import get_logger
from guidedflow.core.results import PricingResult, ValidationResult
from guidedflow.core.scheduler import LoopScheduler, Scheduler
from guidedflow.pricing.confidence import ConfidencePolicy
from guidedflow.pricing.coordinator import PricingCoordinator
from guidedflow.pricing.oracle import PricingOracle, RateTableOracle
from guidedflow.recovery.manager import RecoveryManager, RecoveryOptions, RecoveryState
from guidedflow.validation.coordinator import ValidationCoordinator

_LOGGER = get_logger(__name__)


class GuidedFlowEngine:
    """All coordinators for one principal, sharing a scheduler and event bus."""

    def __init__(
        self,
        principal: Principal,
        store: DraftStore,
        *,
        oracle: PricingOracle | None = None,
        settings: EngineSettings | None = None,
        graph: DependencyGraph | None = None,
        scheduler: Scheduler | None = None,
        bus: EventBus | None = None,
        data: Mapping[str, Any] | None = None,
        current_step: int = 1,
    ) -> None:
        self.principal = principal
        self.settings = settings or EngineSettings()
        self.scheduler = scheduler or LoopScheduler()
        self.bus = bus or EventBus()
        self.graph = graph or DependencyGraph()
        self.store = store
        self.flow = FlowDataStore(principal.estimate_id, data, current_step)

        s = self.settings
        self.validation = ValidationCoordinator(
            self.graph,
            debounce_seconds=s.validation_debounce_seconds,
            area_tolerance=s.area_tolerance,
            enforce_blocked_steps=s.enforce_blocked_steps,
            scheduler=self.scheduler,
            bus=self.bus,
        )
        self.pricing = PricingCoordinator(
            oracle or RateTableOracle(),
            interpreter=FlowInterpreter(s.services_step, s.default_services),
            policy=ConfidencePolicy(max_missing_for_medium=s.max_missing_for_medium),
            debounce_seconds=s.pricing_debounce_seconds,
            oracle_timeout_seconds=s.oracle_timeout_seconds,
            include_risk_adjustments=s.include_risk_adjustments,
            blocked_steps=self.validation.blocked_steps,
            scheduler=self.scheduler,
            bus=self.bus,
        )
        self.autosave = AutoSaveCoordinator(
            store,
            principal,
            interval_seconds=s.autosave_interval_seconds,
            scheduler=self.scheduler,
            bus=self.bus,
        )
        self.recovery = RecoveryManager(
            store,
            principal,
            self.flow,
            max_draft_age_hours=s.max_draft_age_hours,
            auto_cleanup=s.auto_cleanup,
            max_recovery_attempts=s.max_recovery_attempts,
            cleanup_interval_seconds=s.cleanup_interval_seconds,
            step_order=self.graph.step_order,
            on_commit=self._commit_recovered,
            scheduler=self.scheduler,
            bus=self.bus,
        )
        self._pricing_inputs: str | None = None

    @classmethod
    def from_config(
        cls,
        principal: Principal,
        resolver: ConfigResolver | None = None,
        *,
        scheduler: Scheduler | None = None,
        bus: EventBus | None = None,
    ) -> GuidedFlowEngine:
        """Build an engine with the file draft store and rate-table oracle from config."""
        resolver = resolver or ConfigResolver()
        settings = EngineSettings.from_resolver(resolver)
        bus = bus or EventBus()
        install_jsonl_sink(bus, resolver=resolver)

        oracle = (
            RateTableOracle.from_yaml(Path(settings.rate_table_path).expanduser())
            if settings.rate_table_path
            else RateTableOracle()
        )
        store = FileDraftStore(Path(settings.drafts_dir).expanduser(), scheduler=scheduler)
        return cls(
            principal, store, oracle=oracle, settings=settings, scheduler=scheduler, bus=bus
        )

    @property
    def estimate_id(self) -> str:
        return self.principal.estimate_id

    def on_pricing(self, callback: Callable[[PricingResult], None]) -> Subscription[PricingResult]:
        return self.pricing.subscribe(self.estimate_id, callback)

    def on_validation(
        self, callback: Callable[[ValidationResult], None]
    ) -> Subscription[ValidationResult]:
        return self.validation.subscribe(self.estimate_id, callback)

    async def start(self, options: RecoveryOptions | None = None) -> RecoveryState:
        """Look for recoverable drafts before editing begins."""
        state = await self.recovery.initialize(options)
        if self.settings.auto_cleanup:
            self.recovery.start_auto_cleanup()
        return state

    async def edit_step(
        self, step_id: str, payload: Any, changed_field: str | None = None
    ) -> None:
        """Apply a UI edit and schedule the derived recomputes."""
        self.flow.set_step(step_id, payload)
        await self._propagate(step_id, changed_field)

    async def _propagate(self, step_id: str | None, changed_field: str | None = None) -> None:
        snap = self.flow.snapshot()
        inputs_changed = self._track_pricing_inputs(snap.data)
        if (
            step_id is None
            or inputs_changed
            or self.graph.does_step_affect_pricing(step_id, changed_field)
        ):
            await self.pricing.update_pricing(snap.data, self.estimate_id, step_id)
        else:
            _LOGGER.debug(f"engine: step '{step_id}' does not affect pricing")
        await self.validation.update_validation(snap.data, self.estimate_id, step_id)
        self.autosave.set_current_session(snap.data, snap.current_step)

    def _track_pricing_inputs(self, data: Mapping[str, Any]) -> bool:
        # Any step may carry fields the interpreter reads, not only graph-listed ones.
        key = self.pricing.interpreter.extract(data).fingerprint()
        changed = key != self._pricing_inputs
        self._pricing_inputs = key
        return changed

    def go_to_step(self, step: int) -> int:
        """Move to `step`; raises ValidationRejected when not allowed."""
        new_step = self.validation.request_step_transition(self.flow, step)
        snap = self.flow.snapshot()
        self.autosave.set_current_session(snap.data, snap.current_step)
        return new_step

    async def save_and_exit(self) -> bool:
        snap = self.flow.snapshot()
        return await self.autosave.save_and_exit(snap.data, snap.current_step)

    async def accept_recovery(self, draft_id: str) -> SessionDraft | None:
        draft = await self.recovery.accept_recovery(draft_id)
        if draft is not None:
            await self._propagate(None)
        return draft

    async def decline_recovery(self) -> int:
        return await self.recovery.decline_recovery()

    async def _commit_recovered(self, draft: SessionDraft) -> None:
        snap = self.flow.snapshot()
        if not await self.autosave.save_draft(snap.data, snap.current_step, immediate=True):
            err = self.autosave.last_error
            if err is not None:
                raise err

    async def drain(self) -> None:
        await self.pricing.drain()
        await self.validation.drain()
        await self.autosave.drain()
        await self.recovery.drain()

    async def close(self) -> None:
        self.pricing.close()
        self.validation.close()
        self.autosave.close()
        self.recovery.stop_auto_cleanup()
        await self.drain()
