"""Error handling with friendly messages."""

from __future__ import annotations


class GuidedFlowError(Exception):
    """Base exception for all guidedflow errors."""

    def __init__(self, message: str, suggestion: str | None = None) -> None:
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)

    def __str__(self) -> str:
        if self.suggestion:
            return f"{self.message}\nSuggestion: {self.suggestion}"
        return self.message


class ConfigError(GuidedFlowError):
    """Configuration error."""

    pass


class ValidationRejected(GuidedFlowError):
    """A step transition or referential rule was violated."""

    def __init__(
        self,
        message: str,
        suggestion: str | None = None,
        *,
        current_step: int | None = None,
        requested_step: int | None = None,
    ) -> None:
        super().__init__(message, suggestion)
        self.current_step = current_step
        self.requested_step = requested_step


class OracleUnavailable(GuidedFlowError):
    """Pricing computation failed; the previous result stays published."""

    def __init__(self, estimate_id: str | None, cause: BaseException | None = None) -> None:
        detail = f"{type(cause).__name__}: {cause}" if cause is not None else "no response"
        super().__init__(
            f"Pricing oracle unavailable for estimate '{estimate_id}' ({detail})",
            "The last valid price is still shown; retry the calculation later",
        )
        self.estimate_id = estimate_id
        self.cause = cause


class SaveFailed(GuidedFlowError):
    """Draft persistence failed; the session stays dirty."""

    def __init__(self, draft_id: str, reason: str) -> None:
        super().__init__(
            f"Failed to save draft '{draft_id}': {reason}",
            "Your changes are kept in memory and will be saved on the next edit",
        )
        self.draft_id = draft_id
        self.reason = reason


class DraftNotFoundError(GuidedFlowError):
    """Draft does not exist in the persistence store."""

    def __init__(self, draft_id: str) -> None:
        super().__init__(
            f"Draft '{draft_id}' not found",
            "List available drafts with: guidedflow drafts list --user <id>",
        )
        self.draft_id = draft_id


class RecoveryCorrupted(GuidedFlowError):
    """A listed draft failed to load."""

    def __init__(self, draft_id: str, reason: str) -> None:
        super().__init__(
            f"Draft '{draft_id}' is corrupted or unreadable: {reason}",
            "Other drafts can still be recovered; discard this one",
        )
        self.draft_id = draft_id
        self.reason = reason


class StateTransitionError(GuidedFlowError):
    """Illegal state machine transition."""

    pass
