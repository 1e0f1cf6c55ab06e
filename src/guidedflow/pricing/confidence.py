from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from guidedflow.core.results import Confidence, ServiceBreakdown


@dataclass(frozen=True)
class ConfidencePolicy:
    """Maps missing data and validation state to a confidence label.

    - LOW: a service could not be priced, or more than
      `max_missing_for_medium` required fields are missing.
    - MEDIUM: some fields are missing (priced with fallbacks), no service
      was selected explicitly (when `default_services_lower_confidence`),
      or a contributing step is blocked by validation.
    - HIGH: otherwise.
    """

    max_missing_for_medium: int = 2
    default_services_lower_confidence: bool = False

    def classify(
        self,
        breakdown: Iterable[ServiceBreakdown],
        missing_data: Iterable[str],
        source_steps: Iterable[str] = (),
        blocked_steps: Iterable[str] = (),
        services_explicit: bool = True,
    ) -> Confidence:
        services = list(breakdown)
        missing = list(missing_data)

        if not services or any(not s.priced for s in services):
            return Confidence.LOW
        if len(missing) > self.max_missing_for_medium:
            return Confidence.LOW
        if missing:
            return Confidence.MEDIUM
        if set(source_steps) & set(blocked_steps):
            return Confidence.MEDIUM
        if self.default_services_lower_confidence and not services_explicit:
            return Confidence.MEDIUM
        return Confidence.HIGH
