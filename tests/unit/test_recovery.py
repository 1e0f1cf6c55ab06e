"""Unit tests for recovery.manager."""

from __future__ import annotations

import json
from datetime import timedelta

import pytest

from guidedflow.core.errors import RecoveryCorrupted, StateTransitionError
from guidedflow.core.events import EventBus
from guidedflow.core.flow.store import FlowDataStore
from guidedflow.recovery.manager import RecoveryManager, RecoveryOptions, RecoveryPhase


@pytest.fixture
def flow_store():
    return FlowDataStore("est-1")


@pytest.fixture
def manager(memory_store, principal, flow_store, scheduler):
    return RecoveryManager(memory_store, principal, flow_store, scheduler=scheduler)


def _seed(store, factory, scheduler, *specs):
    """specs: (draft_id, age_hours, user_id)"""
    now = scheduler.now()
    for draft_id, age_hours, user_id in specs:
        draft = factory(
            draft_id,
            user_id=user_id,
            data={"scope-details": {"selectedServices": ["WC"]}, "marker": {"id": draft_id}},
            current_step=2,
            updated_at=now - timedelta(hours=age_hours),
        )
        store.drafts[draft_id] = draft


class TestInitialize:
    @pytest.mark.asyncio
    async def test_every_draft_listed_once_newest_first(
        self, manager, memory_store, draft_factory, scheduler
    ):
        _seed(
            memory_store,
            draft_factory,
            scheduler,
            ("d-old", 5, "user-1"),
            ("d-new", 1, "user-1"),
            ("d-mid", 3, "user-1"),
            ("d-other", 1, "user-2"),
        )

        state = await manager.initialize()

        assert state.has_recoverable_sessions
        assert [d.id for d in state.available_drafts] == ["d-new", "d-mid", "d-old"]
        assert manager.phase is RecoveryPhase.RECOVERY_PENDING

    @pytest.mark.asyncio
    async def test_no_drafts_goes_idle(self, manager):
        state = await manager.initialize()
        assert not state.has_recoverable_sessions
        assert manager.phase is RecoveryPhase.IDLE

    @pytest.mark.asyncio
    async def test_expired_drafts_skipped_and_cleaned(
        self, manager, memory_store, draft_factory, scheduler
    ):
        _seed(memory_store, draft_factory, scheduler, ("fresh", 1, "user-1"), ("stale", 30, "user-1"))

        state = await manager.initialize()

        assert [d.id for d in state.available_drafts] == ["fresh"]
        assert "stale" not in memory_store.drafts

    @pytest.mark.asyncio
    async def test_options_override_cleanup(self, manager, memory_store, draft_factory, scheduler):
        _seed(memory_store, draft_factory, scheduler, ("stale", 30, "user-1"))

        state = await manager.initialize(RecoveryOptions(auto_cleanup=False))

        assert state.available_drafts == ()
        assert "stale" in memory_store.drafts

    @pytest.mark.asyncio
    async def test_available_signal_fires_once(
        self, memory_store, principal, flow_store, scheduler, draft_factory
    ):
        bus = EventBus()
        events = []
        bus.subscribe("recovery.available", events.append)
        manager = RecoveryManager(memory_store, principal, flow_store, scheduler=scheduler, bus=bus)
        signals = []
        manager.on_recovery_available(signals.append)
        _seed(memory_store, draft_factory, scheduler, ("d1", 1, "user-1"))

        await manager.initialize()
        await manager.initialize()

        assert len(signals) == 1
        assert signals[0].available_drafts[0].id == "d1"
        assert events == [{"user_id": "user-1", "draft_ids": ["d1"]}]


class TestRecoverSession:
    @pytest.mark.asyncio
    async def test_recover_loads_snapshot_into_flow_store(
        self, manager, memory_store, flow_store, draft_factory, scheduler
    ):
        _seed(memory_store, draft_factory, scheduler, ("d1", 1, "user-1"))
        await manager.initialize()

        draft = await manager.recover_session("d1")

        assert draft is not None
        assert draft.data == memory_store.drafts["d1"].data
        assert flow_store.snapshot().data == memory_store.drafts["d1"].data
        assert flow_store.current_step == 2

    @pytest.mark.asyncio
    async def test_missing_draft_reported_and_dropped(
        self, manager, memory_store, draft_factory, scheduler
    ):
        _seed(memory_store, draft_factory, scheduler, ("d1", 1, "user-1"), ("d2", 2, "user-1"))
        await manager.initialize()
        del memory_store.drafts["d1"]

        assert await manager.recover_session("d1") is None

        state = manager.state
        assert [d.id for d in state.available_drafts] == ["d2"]
        assert len(state.errors) == 1
        assert await manager.recover_session("d2") is not None

    @pytest.mark.asyncio
    async def test_requires_initialize(self, manager):
        with pytest.raises(StateTransitionError):
            await manager.recover_session("d1")


class TestAcceptDecline:
    @pytest.mark.asyncio
    async def test_accept_commits_then_deletes_origin(
        self, memory_store, principal, flow_store, scheduler, draft_factory
    ):
        committed = []

        async def on_commit(draft):
            assert "d1" in memory_store.drafts
            committed.append(draft.id)

        manager = RecoveryManager(
            memory_store, principal, flow_store, scheduler=scheduler, on_commit=on_commit
        )
        _seed(memory_store, draft_factory, scheduler, ("d1", 1, "user-1"), ("d2", 2, "user-1"))
        await manager.initialize()

        draft = await manager.accept_recovery("d1")

        assert draft is not None
        assert committed == ["d1"]
        assert "d1" not in memory_store.drafts
        assert "d2" in memory_store.drafts
        assert manager.phase is RecoveryPhase.IDLE
        assert manager.state.current_session.id == "d1"

    @pytest.mark.asyncio
    async def test_failed_commit_keeps_origin(
        self, memory_store, principal, flow_store, scheduler, draft_factory
    ):
        async def on_commit(draft):
            raise RuntimeError("save failed")

        manager = RecoveryManager(
            memory_store, principal, flow_store, scheduler=scheduler, on_commit=on_commit
        )
        _seed(memory_store, draft_factory, scheduler, ("d1", 1, "user-1"))
        await manager.initialize()

        with pytest.raises(RuntimeError):
            await manager.accept_recovery("d1")
        assert "d1" in memory_store.drafts
        assert manager.phase is RecoveryPhase.RECOVERY_PENDING

    @pytest.mark.asyncio
    async def test_decline_deletes_every_candidate(
        self, manager, memory_store, draft_factory, scheduler
    ):
        _seed(
            memory_store,
            draft_factory,
            scheduler,
            ("d1", 1, "user-1"),
            ("d2", 2, "user-1"),
            ("other", 1, "user-2"),
        )
        await manager.initialize()

        assert await manager.decline_recovery() == 2
        assert list(memory_store.drafts) == ["other"]
        assert manager.phase is RecoveryPhase.IDLE
        assert not manager.state.has_recoverable_sessions

    @pytest.mark.asyncio
    async def test_delete_and_cleanup(self, manager, memory_store, draft_factory, scheduler):
        _seed(memory_store, draft_factory, scheduler, ("d1", 1, "user-1"))
        await manager.initialize(RecoveryOptions(auto_cleanup=False))

        assert await manager.delete_draft("d1") is True
        assert await manager.delete_draft("d1") is False
        assert manager.phase is RecoveryPhase.IDLE

        _seed(memory_store, draft_factory, scheduler, ("old", 48, "user-1"), ("new", 1, "user-1"))
        assert await manager.cleanup_expired_drafts() == 1
        assert sorted(memory_store.drafts) == ["new"]


class TestCorruptedDrafts:
    @pytest.mark.asyncio
    async def test_corrupted_file_does_not_block_others(
        self, file_store, principal, flow_store, scheduler, draft_factory
    ):
        manager = RecoveryManager(file_store, principal, flow_store, scheduler=scheduler)
        await file_store.put_draft(draft_factory("good", data={"a": {"x": 1}}))
        await file_store.put_draft(draft_factory("bad", data={"a": {"x": 2}}))

        path = file_store.draft_path("bad")
        raw = json.loads(path.read_text(encoding="utf-8"))
        raw["data"] = [raw["data"]]
        path.write_text(json.dumps(raw), encoding="utf-8")

        state = await manager.initialize()
        assert {d.id for d in state.available_drafts} == {"good", "bad"}

        assert await manager.recover_session("bad") is None
        assert isinstance(manager.state.errors[0], RecoveryCorrupted)
        assert [d.id for d in manager.state.available_drafts] == ["good"]

        draft = await manager.recover_session("good")
        assert draft is not None
        assert flow_store.snapshot().data == {"a": {"x": 1}}

    @pytest.mark.asyncio
    async def test_timestamp_without_offset_is_read_as_utc(
        self, file_store, principal, flow_store, scheduler, draft_factory
    ):
        manager = RecoveryManager(file_store, principal, flow_store, scheduler=scheduler)
        await file_store.put_draft(draft_factory("good", data={"a": {"x": 1}}))
        odd = {
            "id": "odd",
            "estimate_id": "est-1",
            "user_id": "user-1",
            "data": {"a": {"x": 2}},
            "current_step": 1,
            "created_at": "2024-01-01T00:00:00",
            "updated_at": "2024-01-01T00:00:00",
            "version": 1,
        }
        file_store.draft_path("odd").write_text(json.dumps(odd), encoding="utf-8")

        state = await manager.initialize()

        assert {d.id for d in state.available_drafts} == {"good", "odd"}
        assert all(d.updated_at.tzinfo is not None for d in state.available_drafts)
        assert manager.phase is RecoveryPhase.RECOVERY_PENDING

    @pytest.mark.asyncio
    async def test_unreadable_summary_is_reported_and_skipped(
        self, manager, memory_store, draft_factory, scheduler
    ):
        _seed(memory_store, draft_factory, scheduler, ("good", 1, "user-1"))
        memory_store.drafts["bad"] = draft_factory(
            "bad", data={"a": {"x": 1}}, updated_at="yesterday"
        )

        state = await manager.initialize()

        assert [d.id for d in state.available_drafts] == ["good"]
        assert len(state.errors) == 1
        assert isinstance(state.errors[0], RecoveryCorrupted)
        assert state.errors[0].draft_id == "bad"

    @pytest.mark.asyncio
    async def test_failed_scan_can_be_retried(
        self, manager, memory_store, draft_factory, scheduler, monkeypatch
    ):
        _seed(memory_store, draft_factory, scheduler, ("d1", 1, "user-1"))

        async def broken(user_id):
            raise OSError("store offline")

        monkeypatch.setattr(memory_store, "list_drafts", broken)
        with pytest.raises(OSError):
            await manager.initialize()
        assert manager.phase is RecoveryPhase.IDLE

        monkeypatch.undo()
        state = await manager.initialize()
        assert [d.id for d in state.available_drafts] == ["d1"]


class TestDraftFiltering:
    @pytest.mark.asyncio
    async def test_drafts_without_step_data_are_not_offered(
        self, manager, memory_store, draft_factory, scheduler
    ):
        _seed(memory_store, draft_factory, scheduler, ("d1", 1, "user-1"))
        memory_store.drafts["empty"] = draft_factory("empty", updated_at=scheduler.now())

        state = await manager.initialize()

        assert [d.id for d in state.available_drafts] == ["d1"]
        assert "empty" in memory_store.drafts

    @pytest.mark.asyncio
    async def test_recovery_attempt_limit(self, manager, memory_store, draft_factory, scheduler):
        _seed(memory_store, draft_factory, scheduler, ("d1", 1, "user-1"), ("d2", 2, "user-1"))
        memory_store.drafts["d1"].recovery_attempts = 3

        state = await manager.initialize()
        assert [d.id for d in state.available_drafts] == ["d2"]

        state = await manager.initialize(RecoveryOptions(max_recovery_attempts=0))
        assert [d.id for d in state.available_drafts] == ["d1", "d2"]

    @pytest.mark.asyncio
    async def test_recover_counts_the_attempt(
        self, manager, memory_store, draft_factory, scheduler
    ):
        _seed(memory_store, draft_factory, scheduler, ("d1", 1, "user-1"))
        await manager.initialize()
        scheduler.advance(10.0)

        draft = await manager.recover_session("d1")

        assert draft.recovery_attempts == 0
        stored = memory_store.drafts["d1"]
        assert stored.recovery_attempts == 1
        assert stored.last_recovered_at == scheduler.now()
        assert stored.data == draft.data

    @pytest.mark.asyncio
    async def test_progress(self, manager, memory_store, draft_factory, scheduler):
        _seed(memory_store, draft_factory, scheduler, ("d1", 1, "user-1"))
        state = await manager.initialize()

        progress = manager.progress(state.available_drafts[0])

        assert progress.completed_steps == ("initial-contact",)
        assert progress.current_step_index == 2
        assert progress.total_steps == 8
        assert progress.percentage == 12


class TestAutoCleanup:
    @pytest.mark.asyncio
    async def test_expired_drafts_removed_every_interval(
        self, memory_store, principal, flow_store, scheduler, draft_factory
    ):
        manager = RecoveryManager(
            memory_store,
            principal,
            flow_store,
            cleanup_interval_seconds=3600.0,
            scheduler=scheduler,
        )
        manager.start_auto_cleanup()
        manager.start_auto_cleanup()
        assert scheduler.pending() == 1

        _seed(
            memory_store, draft_factory, scheduler, ("stale", 30, "user-1"), ("fresh", 1, "user-1")
        )
        scheduler.advance(3600.0)
        await manager.drain()

        assert sorted(memory_store.drafts) == ["fresh"]
        assert scheduler.pending() == 1

        manager.stop_auto_cleanup()
        assert scheduler.pending() == 0

    def test_zero_interval_disables(self, memory_store, principal, flow_store, scheduler):
        manager = RecoveryManager(
            memory_store, principal, flow_store, cleanup_interval_seconds=0, scheduler=scheduler
        )
        manager.start_auto_cleanup()
        assert scheduler.pending() == 0
