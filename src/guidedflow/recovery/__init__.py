from guidedflow.recovery.manager import (
    RecoveryManager,
    RecoveryOptions,
    RecoveryPhase,
    RecoveryState,
)

__all__ = ["RecoveryManager", "RecoveryOptions", "RecoveryPhase", "RecoveryState"]
