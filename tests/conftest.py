"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pytest

# Add src to path (for 'guidedflow.*' imports without an install)
repo_root = Path(__file__).parent.parent
sys.path.insert(0, str(repo_root / "src"))

from guidedflow.core.drafts import FileDraftStore, Principal, SessionDraft  # noqa: E402
from guidedflow.core.drafts.model import DraftSummary  # noqa: E402
from guidedflow.core.errors import DraftNotFoundError  # noqa: E402
from guidedflow.core.scheduler import VirtualScheduler  # noqa: E402
from guidedflow.pricing.oracle import RateTableOracle, ServiceCost  # noqa: E402


class FakeOracle:
    """Rate-table oracle with call recording, an optional gate and failure switch."""

    def __init__(self) -> None:
        self._inner = RateTableOracle()
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.gate: asyncio.Event | None = None
        self.fail_with: BaseException | None = None

    async def compute_service_cost(
        self, service: str, measurements: Mapping[str, Any]
    ) -> ServiceCost:
        self.calls.append((service, dict(measurements)))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return await self._inner.compute_service_cost(service, measurements)


class MemoryDraftStore:
    """In-memory DraftStore with a gate for suspending writes and a failure switch.

    `write_yields` makes every write give up the loop that many times, so
    overlapping writers interleave.
    """

    def __init__(self, scheduler: VirtualScheduler) -> None:
        self.scheduler = scheduler
        self.drafts: dict[str, SessionDraft] = {}
        self.writes: list[SessionDraft] = []
        self.gate: asyncio.Event | None = None
        self.fail_with: BaseException | None = None
        self.version_override: int | None = None
        self.write_yields = 0

    async def put_draft(self, draft: SessionDraft) -> SessionDraft:
        if self.gate is not None:
            await self.gate.wait()
        for _ in range(self.write_yields):
            await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        prev = self.drafts.get(draft.id)
        stored = draft.copy()
        stored.version = (prev.version if prev else 0) + 1
        if self.version_override is not None:
            stored.version = self.version_override
        stored.updated_at = self.scheduler.now()
        self.drafts[draft.id] = stored
        self.writes.append(stored.copy())
        return stored.copy()

    async def get_draft(self, draft_id: str) -> SessionDraft:
        if draft_id not in self.drafts:
            raise DraftNotFoundError(draft_id)
        return self.drafts[draft_id].copy()

    async def delete_draft(self, draft_id: str) -> bool:
        return self.drafts.pop(draft_id, None) is not None

    async def list_drafts(self, user_id: str) -> list[DraftSummary]:
        return [d.summary() for d in self.drafts.values() if d.user_id == user_id]


@pytest.fixture
def scheduler():
    """Logical clock starting at 2024-01-01T00:00:00Z."""
    return VirtualScheduler()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def memory_store(scheduler):
    return MemoryDraftStore(scheduler)


@pytest.fixture
def file_store(tmp_path, scheduler):
    return FileDraftStore(tmp_path / "drafts", scheduler=scheduler)


@pytest.fixture
def principal():
    return Principal(user_id="user-1", estimate_id="est-1", session_id="s1")


@pytest.fixture
def config_resolver(tmp_path):
    """ConfigResolver with built-in defaults and no config files."""
    from guidedflow.core.config import ConfigResolver

    return ConfigResolver(
        cli_args={},
        user_config_path=tmp_path / "nonexistent-user.yaml",
        system_config_path=tmp_path / "nonexistent-system.yaml",
    )


@pytest.fixture
def draft_factory():
    """Build SessionDraft instances with sensible defaults."""
    return _make_draft


def _make_draft(
    draft_id: str,
    *,
    user_id: str = "user-1",
    estimate_id: str = "est-1",
    data: dict[str, Any] | None = None,
    current_step: int = 1,
    updated_at=None,
) -> SessionDraft:
    from datetime import UTC, datetime

    ts = updated_at or datetime(2024, 1, 1, tzinfo=UTC)
    return SessionDraft(
        id=draft_id,
        estimate_id=estimate_id,
        user_id=user_id,
        data=data or {},
        current_step=current_step,
        created_at=ts,
        updated_at=ts,
    )
