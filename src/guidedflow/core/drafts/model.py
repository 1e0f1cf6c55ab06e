from __future__ import annotations

import copy
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class SaveReason(StrEnum):
    AUTO_SAVE = "auto-save"
    MANUAL_SAVE = "manual-save"


@dataclass(frozen=True, slots=True)
class Principal:
    """Who is editing what: scopes draft listing and draft ids."""

    user_id: str
    estimate_id: str
    session_id: str = "default"

    @property
    def draft_id(self) -> str:
        return f"{self.estimate_id}--{self.session_id}"


def as_utc(value: datetime) -> datetime:
    """Timestamps without an offset are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))


@dataclass(frozen=True, slots=True)
class DraftProgress:
    completed_steps: tuple[str, ...]
    current_step_index: int
    total_steps: int
    percentage: int


def calculate_progress(current_step: int, step_order: Sequence[str]) -> DraftProgress:
    """Steps before `current_step` (1-based) count as completed."""
    total = len(step_order)
    index = min(max(current_step, 1), total) if total else 0
    completed = tuple(step_order[: max(index - 1, 0)])
    percentage = round(len(completed) / total * 100) if total else 0
    return DraftProgress(completed, index, total, percentage)


@dataclass(slots=True)
class SessionDraft:
    id: str
    estimate_id: str
    user_id: str
    data: dict[str, Any]
    current_step: int
    created_at: datetime
    updated_at: datetime
    save_reason: SaveReason = SaveReason.AUTO_SAVE
    version: int = 0
    # How often this draft was restored without being accepted or discarded.
    recovery_attempts: int = 0
    last_recovered_at: datetime | None = None

    def copy(self) -> SessionDraft:
        return SessionDraft(
            id=self.id,
            estimate_id=self.estimate_id,
            user_id=self.user_id,
            data=copy.deepcopy(self.data),
            current_step=self.current_step,
            created_at=self.created_at,
            updated_at=self.updated_at,
            save_reason=self.save_reason,
            version=self.version,
            recovery_attempts=self.recovery_attempts,
            last_recovered_at=self.last_recovered_at,
        )

    def summary(self) -> DraftSummary:
        return DraftSummary(
            id=self.id,
            estimate_id=self.estimate_id,
            user_id=self.user_id,
            updated_at=self.updated_at,
            version=self.version,
            current_step=self.current_step,
            recovery_attempts=self.recovery_attempts,
            has_data=bool(self.data),
        )

    def progress(self, step_order: Sequence[str]) -> DraftProgress:
        return calculate_progress(self.current_step, step_order)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "estimate_id": self.estimate_id,
            "user_id": self.user_id,
            "data": copy.deepcopy(self.data),
            "current_step": self.current_step,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "save_reason": self.save_reason.value,
            "version": self.version,
            "recovery_attempts": self.recovery_attempts,
            "last_recovered_at": (
                self.last_recovered_at.isoformat() if self.last_recovered_at else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionDraft:
        payload = data.get("data", {})
        if not isinstance(payload, dict):
            raise ValueError("draft data must be a mapping of step id -> payload")
        last_recovered = data.get("last_recovered_at")
        return cls(
            id=str(data["id"]),
            estimate_id=str(data["estimate_id"]),
            user_id=str(data["user_id"]),
            data=payload,
            current_step=int(data.get("current_step", 1)),
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data["updated_at"]),
            save_reason=SaveReason(str(data.get("save_reason", SaveReason.AUTO_SAVE.value))),
            version=int(data.get("version", 0)),
            recovery_attempts=int(data.get("recovery_attempts", 0)),
            last_recovered_at=parse_timestamp(last_recovered) if last_recovered else None,
        )


@dataclass(frozen=True, slots=True)
class DraftSummary:
    id: str
    estimate_id: str
    user_id: str
    updated_at: datetime
    version: int
    current_step: int = 1
    recovery_attempts: int = 0
    has_data: bool = True

    def progress(self, step_order: Sequence[str]) -> DraftProgress:
        return calculate_progress(self.current_step, step_order)
