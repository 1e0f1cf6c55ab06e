"""guidedflow core: flow state, scheduling, events, results and drafts."""

from guidedflow.core.config import ConfigResolver, EngineSettings
from guidedflow.core.drafts import (
    DraftStore,
    DraftSummary,
    FileDraftStore,
    Principal,
    SaveReason,
    SessionDraft,
)
from guidedflow.core.errors import (
    ConfigError,
    DraftNotFoundError,
    GuidedFlowError,
    OracleUnavailable,
    RecoveryCorrupted,
    SaveFailed,
    StateTransitionError,
    ValidationRejected,
)
from guidedflow.core.events import EventBus, ResultChannel, Subscription
from guidedflow.core.flow import DependencyGraph, FlowDataStore, FlowInterpreter, fingerprint
from guidedflow.core.logging import (
    VerbosityLevel,
    get_logger,
    get_verbosity,
    set_colors,
    set_verbosity,
)
from guidedflow.core.results import (
    Confidence,
    PricingResult,
    ServiceBreakdown,
    Severity,
    ValidationError,
    ValidationResult,
    ValidationSuggestion,
    ValidationWarning,
)
from guidedflow.core.scheduler import LoopScheduler, Scheduler, VirtualScheduler

__all__ = [
    # Config
    "ConfigResolver",
    "EngineSettings",
    # Drafts
    "DraftStore",
    "DraftSummary",
    "FileDraftStore",
    "Principal",
    "SaveReason",
    "SessionDraft",
    # Errors
    "GuidedFlowError",
    "ConfigError",
    "DraftNotFoundError",
    "OracleUnavailable",
    "RecoveryCorrupted",
    "SaveFailed",
    "StateTransitionError",
    "ValidationRejected",
    # Events
    "EventBus",
    "ResultChannel",
    "Subscription",
    # Flow
    "DependencyGraph",
    "FlowDataStore",
    "FlowInterpreter",
    "fingerprint",
    # Logging
    "VerbosityLevel",
    "get_logger",
    "get_verbosity",
    "set_colors",
    "set_verbosity",
    # Results
    "Confidence",
    "PricingResult",
    "ServiceBreakdown",
    "Severity",
    "ValidationError",
    "ValidationResult",
    "ValidationSuggestion",
    "ValidationWarning",
    # Scheduling
    "LoopScheduler",
    "Scheduler",
    "VirtualScheduler",
]
