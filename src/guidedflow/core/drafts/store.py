"""Persistence contract for session drafts and a JSON file implementation."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Protocol

from guidedflow.core.drafts.model import DraftSummary, SessionDraft, parse_timestamp
from guidedflow.core.errors import DraftNotFoundError, RecoveryCorrupted
from guidedflow.core.logging import get_logger
from guidedflow.core.scheduler import LoopScheduler, Scheduler

_LOGGER = get_logger(__name__)


class DraftStore(Protocol):
    """What the engine needs from draft persistence.

    The store is last-write-wins and assigns `updated_at` and `version`.
    """

    async def put_draft(self, draft: SessionDraft) -> SessionDraft:
        """Persist `draft`; returns the stored copy with server-assigned fields."""
        ...

    async def get_draft(self, draft_id: str) -> SessionDraft:
        """Raises DraftNotFoundError or RecoveryCorrupted."""
        ...

    async def delete_draft(self, draft_id: str) -> bool:
        """Returns False when nothing was deleted."""
        ...

    async def list_drafts(self, user_id: str) -> list[DraftSummary]: ...


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)


def _safe_name(draft_id: str) -> str:
    safe = "".join(ch if (ch.isalnum() or ch in "_-.") else "_" for ch in draft_id)
    if not safe or safe.strip(".") == "":
        raise DraftNotFoundError(draft_id)
    return safe


class FileDraftStore:
    """One JSON document per draft under `root`.

    Layout:
        <root>/<draft_id>.json
    """

    def __init__(self, root: Path, scheduler: Scheduler | None = None) -> None:
        self._root = Path(root)
        self._scheduler = scheduler or LoopScheduler()

    @property
    def root(self) -> Path:
        return self._root

    def draft_path(self, draft_id: str) -> Path:
        return self._root / f"{_safe_name(draft_id)}.json"

    def _read(self, draft_id: str) -> SessionDraft:
        path = self.draft_path(draft_id)
        if not path.exists():
            raise DraftNotFoundError(draft_id)
        try:
            return SessionDraft.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (ValueError, KeyError, TypeError) as e:
            raise RecoveryCorrupted(draft_id, f"{type(e).__name__}: {e}") from e

    def _try_load_existing(self, draft_id: str) -> SessionDraft | None:
        try:
            return self._read(draft_id)
        except (DraftNotFoundError, RecoveryCorrupted):
            return None

    async def put_draft(self, draft: SessionDraft) -> SessionDraft:
        prev = self._try_load_existing(draft.id)
        now = self._scheduler.now()

        stored = draft.copy()
        stored.version = (prev.version if prev is not None else 0) + 1
        stored.created_at = prev.created_at if prev is not None else draft.created_at
        stored.updated_at = max(now, prev.updated_at) if prev is not None else now

        payload = json.dumps(stored.to_dict(), indent=2, sort_keys=True) + "\n"
        _atomic_write_text(self.draft_path(draft.id), payload)
        _LOGGER.verbose(
            f"draft stored: id={stored.id} version={stored.version} reason={stored.save_reason.value}"
        )
        return stored

    async def get_draft(self, draft_id: str) -> SessionDraft:
        return self._read(draft_id)

    async def delete_draft(self, draft_id: str) -> bool:
        path = self.draft_path(draft_id)
        if not path.exists():
            return False
        path.unlink()
        _LOGGER.verbose(f"draft deleted: id={draft_id}")
        return True

    async def list_drafts(self, user_id: str) -> list[DraftSummary]:
        if not self._root.exists():
            return []
        out: list[DraftSummary] = []
        for p in sorted(self._root.glob("*.json")):
            try:
                raw = json.loads(p.read_text(encoding="utf-8"))
                if str(raw.get("user_id")) != user_id:
                    continue
                out.append(_summary_from_raw(raw))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                # Unattributable to a user; never listed.
                _LOGGER.warning(f"unreadable draft header {p.name}: {type(e).__name__}: {e}")
        return out


def _summary_from_raw(raw: dict) -> DraftSummary:
    return DraftSummary(
        id=str(raw["id"]),
        estimate_id=str(raw["estimate_id"]),
        user_id=str(raw["user_id"]),
        updated_at=parse_timestamp(raw["updated_at"]),
        version=int(raw.get("version", 0)),
        current_step=int(raw.get("current_step", 1)),
        recovery_attempts=int(raw.get("recovery_attempts", 0)),
        has_data=bool(raw.get("data")),
    )
