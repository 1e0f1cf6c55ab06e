"""Unit tests for pricing.coordinator."""

from __future__ import annotations

import asyncio

import pytest

from guidedflow.core.errors import OracleUnavailable
from guidedflow.core.events import EventBus
from guidedflow.core.results import Confidence
from guidedflow.pricing.coordinator import PricingCoordinator, risk_adjustments


def _flow(area: float, stories: int | None = 1) -> dict:
    step = {"glassArea": area}
    if stories is not None:
        step["stories"] = stories
    return {"step1": step}


async def _until(predicate) -> None:
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


@pytest.fixture
def coordinator(scheduler, oracle):
    return PricingCoordinator(oracle, debounce_seconds=1.0, scheduler=scheduler)


class TestScenarios:
    @pytest.mark.asyncio
    async def test_complete_measurements_price_with_high_confidence(self, coordinator):
        result = await coordinator.update_pricing(
            {"step1": {"glassArea": 5000, "stories": 10}}, "est-1", immediate=True
        )

        assert result is not None
        assert result.total_cost > 0
        assert result.total_cost == pytest.approx(5000 * 0.35 * 1.25)
        assert result.missing_data == ()
        assert result.confidence is Confidence.HIGH
        assert result.source_steps_used == ("step1",)

    @pytest.mark.asyncio
    async def test_missing_stories_downgrades_confidence(self, coordinator):
        result = await coordinator.update_pricing(
            {"step1": {"glassArea": 5000}}, "est-1", immediate=True
        )

        assert result is not None
        assert result.missing_data == ("stories",)
        assert result.confidence in {Confidence.MEDIUM, Confidence.LOW}
        assert result.total_cost == pytest.approx(1750.0)

    @pytest.mark.asyncio
    async def test_service_without_rate_is_unpriced_not_fatal(self, coordinator):
        flow = _flow(1000)
        flow["scope-details"] = {"selectedServices": ["WC", "FR", "XX"]}

        result = await coordinator.update_pricing(flow, "est-1", immediate=True)

        assert result is not None
        assert [(s.service, s.priced) for s in result.service_breakdown] == [
            ("WC", True),
            ("FR", False),
            ("XX", False),
        ]
        assert result.missing_data == ("numberOfFrames",)
        assert result.total_cost == pytest.approx(350.0)
        assert result.confidence is Confidence.LOW


class TestDebounce:
    @pytest.mark.asyncio
    async def test_updates_within_window_coalesce_to_latest(self, coordinator, scheduler, oracle):
        seen = []
        coordinator.subscribe("est-1", seen.append)

        for area in (1000, 2000, 3000):
            assert await coordinator.update_pricing(_flow(area), "est-1") is None
            scheduler.advance(0.3)

        assert oracle.calls == []
        scheduler.advance(1.0)
        await coordinator.drain()

        assert len(oracle.calls) == 1
        assert oracle.calls[0][1]["glassArea"] == 3000
        assert len(seen) == 1
        assert seen[0].total_cost == pytest.approx(3000 * 0.35)

    @pytest.mark.asyncio
    async def test_identical_input_triggers_one_recompute(self, coordinator, scheduler):
        await coordinator.update_pricing(_flow(1000), "est-1")
        await coordinator.update_pricing(_flow(1000), "est-1")
        scheduler.advance(1.0)
        await coordinator.drain()

        await coordinator.update_pricing(_flow(1000), "est-1")
        scheduler.advance(1.0)
        await coordinator.drain()

        assert coordinator.recompute_count == 1

    @pytest.mark.asyncio
    async def test_immediate_cancels_pending_debounce(self, coordinator, scheduler, oracle):
        await coordinator.update_pricing(_flow(1000), "est-1")
        assert coordinator.is_pending("est-1")

        result = await coordinator.update_pricing(_flow(2000), "est-1", immediate=True)
        assert result is not None
        assert scheduler.pending() == 0

        scheduler.advance(5.0)
        await coordinator.drain()
        assert [c[1]["glassArea"] for c in oracle.calls] == [2000]

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, coordinator, scheduler):
        await coordinator.update_pricing(_flow(1000), "est-1")
        await coordinator.update_pricing(_flow(2000), "est-2")
        scheduler.advance(1.0)
        await coordinator.drain()

        assert coordinator.last_result("est-1").total_cost == pytest.approx(350.0)
        assert coordinator.last_result("est-2").total_cost == pytest.approx(700.0)


class TestOrdering:
    @pytest.mark.asyncio
    async def test_result_superseded_while_in_flight_is_discarded(self, coordinator, oracle):
        seen = []
        coordinator.subscribe("est-1", seen.append)
        oracle.gate = asyncio.Event()

        first = asyncio.create_task(coordinator.update_pricing(_flow(1000), "est-1", immediate=True))
        await _until(lambda: len(oracle.calls) == 1)
        second = asyncio.create_task(
            coordinator.update_pricing(_flow(2000), "est-1", immediate=True)
        )
        await asyncio.sleep(0)
        oracle.gate.set()

        assert await first is None
        newer = await second
        assert newer is not None
        assert [r.total_cost for r in seen] == [pytest.approx(700.0)]
        assert coordinator.last_result("est-1") is newer

    @pytest.mark.asyncio
    async def test_observed_timestamps_are_non_decreasing(self, coordinator, scheduler):
        stamps = []
        coordinator.subscribe("est-1", lambda r: stamps.append(r.computed_at))

        for area in (1000, 2000, 3000, 4000):
            await coordinator.update_pricing(_flow(area), "est-1")
            scheduler.advance(1.5)
            await coordinator.drain()
        await coordinator.update_pricing(_flow(5000), "est-1", immediate=True)

        assert len(stamps) == 5
        assert stamps == sorted(stamps)


class TestFailures:
    @pytest.mark.asyncio
    async def test_oracle_failure_keeps_previous_result(self, coordinator, oracle):
        seen = []
        coordinator.subscribe("est-1", seen.append)
        first = await coordinator.update_pricing(_flow(1000), "est-1", immediate=True)

        oracle.fail_with = RuntimeError("rate service down")
        with pytest.raises(OracleUnavailable) as exc_info:
            await coordinator.update_pricing(_flow(2000), "est-1", immediate=True)

        assert exc_info.value.estimate_id == "est-1"
        assert coordinator.last_result("est-1") is first
        assert isinstance(coordinator.last_error("est-1"), OracleUnavailable)
        assert seen == [first]

    @pytest.mark.asyncio
    async def test_debounced_failure_is_not_published(self, coordinator, scheduler, oracle):
        seen = []
        coordinator.subscribe("est-1", seen.append)
        oracle.fail_with = RuntimeError("boom")

        await coordinator.update_pricing(_flow(1000), "est-1")
        scheduler.advance(1.0)
        await coordinator.drain()

        assert seen == []
        assert isinstance(coordinator.last_error("est-1"), OracleUnavailable)

    @pytest.mark.asyncio
    async def test_failed_input_can_be_retried(self, coordinator, scheduler, oracle):
        oracle.fail_with = RuntimeError("boom")
        await coordinator.update_pricing(_flow(1000), "est-1")
        scheduler.advance(1.0)
        await coordinator.drain()

        oracle.fail_with = None
        await coordinator.update_pricing(_flow(1000), "est-1")
        scheduler.advance(1.0)
        await coordinator.drain()

        assert coordinator.last_result("est-1") is not None
        assert coordinator.last_error("est-1") is None

    @pytest.mark.asyncio
    async def test_oracle_timeout(self, scheduler, oracle):
        coordinator = PricingCoordinator(
            oracle, oracle_timeout_seconds=0.01, scheduler=scheduler
        )
        oracle.gate = asyncio.Event()

        with pytest.raises(OracleUnavailable) as exc_info:
            await coordinator.update_pricing(_flow(1000), "est-1", immediate=True)
        assert isinstance(exc_info.value.cause, TimeoutError)
        assert coordinator.last_result("est-1") is None

    @pytest.mark.asyncio
    async def test_subscriber_exception_does_not_block_others(self, coordinator):
        received = []

        def broken(_result):
            raise ValueError("render failed")

        coordinator.subscribe("est-1", broken)
        coordinator.subscribe("est-1", received.append)

        result = await coordinator.update_pricing(_flow(1000), "est-1", immediate=True)
        assert received == [result]


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent_and_keeps_work_running(
        self, coordinator, scheduler
    ):
        seen = []
        sub = coordinator.subscribe("est-1", seen.append)
        await coordinator.update_pricing(_flow(1000), "est-1")

        sub()
        sub.unsubscribe()
        assert not sub.active

        scheduler.advance(1.0)
        await coordinator.drain()
        assert seen == []
        assert coordinator.last_result("est-1") is not None


class TestRealTime:
    @pytest.mark.asyncio
    async def test_real_time_pricing_bypasses_channel(self, coordinator):
        seen = []
        coordinator.subscribe("est-1", seen.append)

        result = await coordinator.calculate_real_time_pricing(_flow(1000), "est-1")

        assert result.total_cost == pytest.approx(350.0)
        assert seen == []
        assert coordinator.last_result("est-1") is result

    @pytest.mark.asyncio
    async def test_recalculate_publishes(self, coordinator):
        seen = []
        coordinator.subscribe("est-1", seen.append)
        result = await coordinator.recalculate(_flow(1000), "est-1")
        assert seen == [result]

    @pytest.mark.asyncio
    async def test_real_time_pricing_ignores_later_caller_edits(self, coordinator, oracle):
        flow = _flow(1000)
        flow["pricing"] = {"strategy": {"markup": 10}}
        oracle.gate = asyncio.Event()
        task = asyncio.create_task(coordinator.calculate_real_time_pricing(flow, "est-1"))
        await _until(lambda: oracle.calls)

        flow["pricing"]["strategy"]["markup"] = 50
        oracle.gate.set()
        result = await task

        assert result.total_cost == pytest.approx(350.0 * 1.1)


class TestAdjustments:
    @pytest.mark.asyncio
    async def test_markup_and_height_premium(self, coordinator):
        data = {
            "area-of-work": {"buildingDetails": {"height": 60}},
            "step1": {"glassArea": 1000, "stories": 1},
            "pricing": {"strategy": {"markup": 20}},
        }
        result = await coordinator.update_pricing(data, "est-1", immediate=True)

        kinds = [a.kind for a in result.adjustments]
        assert kinds == ["markup", "risk"]
        assert result.total_cost == pytest.approx(350 * 1.2 * 1.15)
        assert result.service_breakdown[0].cost == pytest.approx(350.0)

    def test_risk_adjustments(self):
        assert risk_adjustments({}) == []
        assert [a.percent for a in risk_adjustments({"height": 30})] == [8.0]
        assert [a.percent for a in risk_adjustments({"height": 80, "urgency": "urgent"})] == [
            15.0,
            25.0,
        ]

    @pytest.mark.asyncio
    async def test_blocked_source_step_lowers_confidence(self, scheduler, oracle):
        coordinator = PricingCoordinator(
            oracle, scheduler=scheduler, blocked_steps=lambda _estimate_id: ("step1",)
        )
        result = await coordinator.update_pricing(
            {"step1": {"glassArea": 5000, "stories": 10}}, "est-1", immediate=True
        )
        assert result.confidence is Confidence.MEDIUM


class TestDiagnostics:
    @pytest.mark.asyncio
    async def test_emits_operation_start_and_end(self, scheduler, oracle):
        bus = EventBus()
        events = []
        bus.subscribe_all(lambda event, data: events.append((event, data)))
        coordinator = PricingCoordinator(oracle, scheduler=scheduler, bus=bus)

        await coordinator.update_pricing(_flow(1000), "est-1", immediate=True)

        names = [e for e, _ in events]
        assert names == ["operation.start", "operation.end"]
        end = events[1][1]
        assert end["component"] == "pricing"
        assert end["data"]["status"] == "ok"
