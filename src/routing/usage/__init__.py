"""API usage metering and admission control.

Tracks daily and monthly call, token and cost consumption of the
classification API against configured budgets and decides whether a
proposed call may proceed.
"""

from src.routing.usage.meter import UsageMeter, estimate_tokens
from src.routing.usage.models import (
    DimensionUsage,
    HistoryEntry,
    PeriodType,
    PeriodUsage,
    UsageCheckResult,
    UsageLedger,
    UsageSnapshot,
)

__all__ = [
    "DimensionUsage",
    "estimate_tokens",
    "HistoryEntry",
    "PeriodType",
    "PeriodUsage",
    "UsageCheckResult",
    "UsageLedger",
    "UsageMeter",
    "UsageSnapshot",
]
