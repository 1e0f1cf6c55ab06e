"""Static map of which step outputs feed which computations."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

PRICING = "pricing"


@dataclass(frozen=True)
class StepDependency:
    step_id: str
    field_path: str
    affects: tuple[str, ...]


# Field-level dependencies of the estimation flow.
DEFAULT_DEPENDENCIES: tuple[StepDependency, ...] = (
    StepDependency("scope-details", "selectedServices", ("takeoff", "duration", "expenses", PRICING)),
    StepDependency("area-of-work", "measurements", ("takeoff", "duration", "expenses", PRICING)),
    StepDependency("area-of-work", "buildingDetails.height", ("duration", "expenses", PRICING)),
    StepDependency("area-of-work", "buildingDetails.stories", ("duration", "expenses", PRICING)),
    StepDependency("takeoff", "measurements", ("duration", "expenses", PRICING)),
    StepDependency("duration", "timeline.estimatedHours", ("expenses", PRICING)),
    StepDependency("expenses", "breakdown", (PRICING,)),
    StepDependency("pricing", "strategy", ()),
)

DEFAULT_STEP_ORDER: tuple[str, ...] = (
    "initial-contact",
    "scope-details",
    "area-of-work",
    "takeoff",
    "duration",
    "expenses",
    "pricing",
    "review",
)


class DependencyGraph:
    """Directed step graph; pure and side-effect free."""

    def __init__(
        self,
        dependencies: Iterable[StepDependency] = DEFAULT_DEPENDENCIES,
        step_order: Iterable[str] = DEFAULT_STEP_ORDER,
    ) -> None:
        self._deps: dict[str, list[StepDependency]] = {}
        for dep in dependencies:
            self._deps.setdefault(dep.step_id, []).append(dep)
        self._order = list(step_order)

        nodes = set(self._order)
        for step_id, deps in self._deps.items():
            nodes.add(step_id)
            for dep in deps:
                nodes.update(dep.affects)
        self._steps = frozenset(nodes)

    @classmethod
    def from_mapping(
        cls, edges: Mapping[str, Iterable[str]], step_order: Iterable[str] | None = None
    ) -> DependencyGraph:
        """Build a step-level graph (no field paths) from `step -> affected steps`."""
        deps = [StepDependency(step, "", tuple(affects)) for step, affects in edges.items()]
        order = list(step_order) if step_order is not None else list(edges.keys())
        return cls(deps, order)

    @property
    def steps(self) -> frozenset[str]:
        return self._steps

    @property
    def step_order(self) -> list[str]:
        return list(self._order)

    def step_at(self, index: int) -> str | None:
        """Step id for a 1-based step index."""
        if 1 <= index <= len(self._order):
            return self._order[index - 1]
        return None

    def index_of(self, step_id: str) -> int | None:
        try:
            return self._order.index(step_id) + 1
        except ValueError:
            return None

    def direct_targets(self, step_id: str) -> list[str]:
        seen: dict[str, None] = {}
        for dep in self._deps.get(step_id, []):
            for target in dep.affects:
                seen.setdefault(target, None)
        return list(seen)

    def downstream_of(self, step_id: str) -> list[str]:
        """Every step transitively affected by `step_id`, nearest first."""
        result: list[str] = []
        queue = self.direct_targets(step_id)
        while queue:
            step = queue.pop(0)
            if step in result or step == step_id:
                continue
            result.append(step)
            queue.extend(self.direct_targets(step))
        return result

    def does_step_affect_pricing(self, step_id: str, changed_field: str | None = None) -> bool:
        if step_id == PRICING:
            # Markup and discounts live on the pricing step itself.
            return True
        deps = self._deps.get(step_id)
        if not deps:
            return False

        relevant = deps
        if changed_field:
            relevant = [d for d in deps if _field_overlaps(d.field_path, changed_field)]

        for dep in relevant:
            if PRICING in dep.affects:
                return True
            if any(PRICING in self.downstream_of(t) or t == PRICING for t in dep.affects):
                return True
        return False


def _field_overlaps(dep_path: str, changed_field: str) -> bool:
    if not dep_path:
        return True
    return (
        dep_path == changed_field
        or dep_path.startswith(changed_field + ".")
        or changed_field.startswith(dep_path + ".")
    )
