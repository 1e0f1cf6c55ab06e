from guidedflow.core.drafts.model import (
    DraftProgress,
    DraftSummary,
    Principal,
    SaveReason,
    SessionDraft,
)
from guidedflow.core.drafts.store import DraftStore, FileDraftStore

__all__ = [
    "DraftProgress",
    "DraftStore",
    "DraftSummary",
    "FileDraftStore",
    "Principal",
    "SaveReason",
    "SessionDraft",
]
