from guidedflow.pricing.confidence import ConfidencePolicy
from guidedflow.pricing.coordinator import PricingCoordinator
from guidedflow.pricing.oracle import PricingOracle, RateTableOracle, ServiceCost, ServiceRate

__all__ = [
    "ConfidencePolicy",
    "PricingCoordinator",
    "PricingOracle",
    "RateTableOracle",
    "ServiceCost",
    "ServiceRate",
]
