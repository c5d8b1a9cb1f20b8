"""Cost metering."""

from .ledger import BudgetAlert, BudgetConfig, BudgetStatus, CostLedger, PricingTable, UsageRecorder, UsageSink

__all__ = [
    "BudgetAlert",
    "BudgetConfig",
    "BudgetStatus",
    "CostLedger",
    "PricingTable",
    "UsageRecorder",
    "UsageSink",
]
