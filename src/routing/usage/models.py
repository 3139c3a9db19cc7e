"""Usage ledger and admission-check models.

The usage ledger is persisted as
``{version, lastUpdated, currentPeriod: {daily, monthly}, history[]}`` with
camelCase keys. Exactly one live daily and one live monthly counter exist
once the ledger is initialized.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


USAGE_LEDGER_VERSION = "1.0"


class _LedgerModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class PeriodCounter(_LedgerModel):
    """Accumulated usage for one period."""

    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        """Input plus output tokens."""
        return self.input_tokens + self.output_tokens


class DailyCounter(PeriodCounter):
    """Live counter for a single UTC day (``YYYY-MM-DD``)."""

    date: str


class MonthlyCounter(PeriodCounter):
    """Live counter for a single UTC month (``YYYY-MM``)."""

    month: str


class CurrentPeriod(_LedgerModel):
    """The two live counters."""

    daily: DailyCounter
    monthly: MonthlyCounter


class PeriodType(str, Enum):
    """Granularity of an archived history entry."""

    DAILY = "daily"
    MONTHLY = "monthly"


class HistoryEntry(PeriodCounter):
    """An archived period counter.

    Attributes:
        date: Period identifier (``YYYY-MM-DD`` or ``YYYY-MM``).
        type: Whether the entry archives a day or a month.
    """

    date: str
    type: PeriodType


class UsageLedger(_LedgerModel):
    """The usage ledger as persisted to disk."""

    version: str = USAGE_LEDGER_VERSION
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    current_period: CurrentPeriod
    history: List[HistoryEntry] = Field(default_factory=list)


class DimensionUsage(BaseModel):
    """One metered dimension of one period.

    Attributes:
        current: Usage recorded so far.
        limit: Configured ceiling.
        percentage: Usage fraction (0.0 = none, 1.0 = at the ceiling).
    """

    current: float
    limit: float
    percentage: float


class PeriodUsage(BaseModel):
    """Calls, tokens and cost for one period."""

    calls: DimensionUsage
    tokens: DimensionUsage
    cost: DimensionUsage

    @property
    def peak(self) -> float:
        """The worst of the three usage fractions."""
        return max(self.calls.percentage, self.tokens.percentage, self.cost.percentage)


class UsageSnapshot(BaseModel):
    """Daily and monthly usage at the moment of a check."""

    daily: PeriodUsage
    monthly: PeriodUsage

    @property
    def daily_peak(self) -> float:
        """The worst daily usage fraction, as used by priority decisions."""
        return self.daily.peak


class UsageCheckResult(BaseModel):
    """Answer to an admission-control query.

    Attributes:
        allowed: Whether the proposed call may proceed.
        reason: Which dimension tripped, when refused.
        usage_snapshot: Usage fractions including the proposed call.
        warnings: Non-blocking warnings for dimensions near their limits.
        recommendations: Suggestions for reducing usage.
    """

    allowed: bool
    reason: Optional[str] = None
    usage_snapshot: UsageSnapshot
    warnings: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
