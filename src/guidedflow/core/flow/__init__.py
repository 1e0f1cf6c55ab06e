from guidedflow.core.flow.dependencies import DependencyGraph, StepDependency
from guidedflow.core.flow.interpret import FlowInterpreter, PricingInputs
from guidedflow.core.flow.store import FlowDataStore, FlowSnapshot, GuidedFlowData, fingerprint

__all__ = [
    "DependencyGraph",
    "FlowDataStore",
    "FlowInterpreter",
    "FlowSnapshot",
    "GuidedFlowData",
    "PricingInputs",
    "StepDependency",
    "fingerprint",
]
