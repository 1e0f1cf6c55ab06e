"""guidedflow - coordination engine for multi-step estimation flows."""

__version__ = "0.1.0"

from guidedflow.engine import GuidedFlowEngine

__all__ = ["GuidedFlowEngine", "__version__"]
