from guidedflow.validation.coordinator import ValidationCoordinator
from guidedflow.validation.rules import DEFAULT_RULES, RuleContext, RuleOutcome, ValidationRule

__all__ = [
    "DEFAULT_RULES",
    "RuleContext",
    "RuleOutcome",
    "ValidationCoordinator",
    "ValidationRule",
]
