"""Usage meter for the metered classification API.

Tracks calls, tokens and estimated cost for the current UTC day and month
against configured ceilings, answers admission-control queries before a
call is made, and records actual usage after a call succeeds.

A proposed call is refused when, counting the call itself, any dimension
would pass its emergency threshold (95% daily / 90% monthly by default).
Dimensions at or above the warning threshold produce non-blocking warnings.

Period rollover happens lazily on every check or record: a live counter
whose day or month has passed is archived into the history list and
reset. History keeps 90 days of daily and roughly 24 months of monthly
entries.
"""

import json
import math
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import structlog
from pydantic import ValidationError

from src.routing.config import UsageConfig
from src.routing.persistence import atomic_write
from src.routing.usage.models import (
    CurrentPeriod,
    DailyCounter,
    DimensionUsage,
    HistoryEntry,
    MonthlyCounter,
    PeriodCounter,
    PeriodType,
    PeriodUsage,
    UsageCheckResult,
    UsageLedger,
    UsageSnapshot,
)


logger = structlog.get_logger()


DAILY_HISTORY_DAYS = 90
MONTHLY_HISTORY_DAYS = 730

# Characters per token used for request size estimates
CHARS_PER_TOKEN = 4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a piece of text from its length."""
    return max(1, math.ceil(len(text or "") / CHARS_PER_TOKEN))


def _percent(fraction: float) -> int:
    return int(round(fraction * 100))


class UsageMeter:
    """Budget tracker and admission gate for classifier calls.

    All load-modify-persist sequences run under a single lock.

    Attributes:
        config: Usage limits, pricing and thresholds.
        usage_file: Path of the JSON usage ledger.
    """

    def __init__(
        self,
        config: UsageConfig,
        usage_file: Path,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.usage_file = Path(usage_file)
        self._now = now_fn or _utcnow
        self._lock = threading.RLock()
        self._ledger = self._load()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def calculate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """Return the estimated USD cost of a call."""
        pricing = self.config.pricing
        return (
            (input_tokens / 1000) * pricing.input_cost_per_1k
            + (output_tokens / 1000) * pricing.output_cost_per_1k
        )

    def check_limits(
        self,
        estimated_input_tokens: int,
        estimated_output_tokens: int,
    ) -> UsageCheckResult:
        """Decide whether a proposed call fits within the configured budget.

        Args:
            estimated_input_tokens: Expected prompt tokens.
            estimated_output_tokens: Expected completion tokens.

        Returns:
            UsageCheckResult with the decision, the usage snapshot including
            the proposed call, warnings and recommendations.
        """
        estimated_cost = self.calculate_cost(estimated_input_tokens, estimated_output_tokens)
        estimated_tokens = estimated_input_tokens + estimated_output_tokens

        with self._lock:
            self._roll_over()
            daily = self._ledger.current_period.daily
            monthly = self._ledger.current_period.monthly
            snapshot = self._snapshot(
                daily,
                monthly,
                extra_calls=1,
                extra_tokens=estimated_tokens,
                extra_cost=estimated_cost,
            )

        limits = self.config.limits
        emergency = self.config.emergency_thresholds
        warning = self.config.warning_thresholds

        reason = None
        checks = [
            (snapshot.daily.calls, emergency.daily,
             f"Daily API call limit exceeded ({_percent(snapshot.daily.calls.percentage)}% of {limits.daily_calls})"),
            (snapshot.monthly.calls, emergency.monthly,
             f"Monthly API call limit exceeded ({_percent(snapshot.monthly.calls.percentage)}% of {limits.monthly_calls})"),
            (snapshot.daily.tokens, emergency.daily,
             f"Daily token limit exceeded ({_percent(snapshot.daily.tokens.percentage)}% of {limits.daily_tokens})"),
            (snapshot.monthly.tokens, emergency.monthly,
             f"Monthly token limit exceeded ({_percent(snapshot.monthly.tokens.percentage)}% of {limits.monthly_tokens})"),
            (snapshot.daily.cost, emergency.daily,
             f"Daily cost limit exceeded (${daily.estimated_cost:.2f} + ${estimated_cost:.2f} > ${limits.daily_cost:g})"),
            (snapshot.monthly.cost, emergency.monthly,
             f"Monthly cost limit exceeded (${monthly.estimated_cost:.2f} + ${estimated_cost:.2f} > ${limits.monthly_cost:g})"),
        ]
        for dimension, threshold, message in checks:
            if dimension.percentage >= threshold:
                reason = message
                break

        warnings = self._warnings(snapshot, warning.daily, warning.monthly)
        recommendations = self._recommendations(snapshot, warnings)

        result = UsageCheckResult(
            allowed=reason is None,
            reason=reason,
            usage_snapshot=snapshot,
            warnings=warnings,
            recommendations=recommendations,
        )

        if not result.allowed:
            logger.warning("Usage limit reached, refusing call", reason=reason)
        elif warnings:
            logger.info("Usage approaching limits", warnings=warnings)
        return result

    def record_usage(self, input_tokens: int, output_tokens: int) -> None:
        """Record the actual usage of a call that succeeded.

        Args:
            input_tokens: Prompt tokens consumed.
            output_tokens: Completion tokens produced.
        """
        cost = self.calculate_cost(input_tokens, output_tokens)
        with self._lock:
            self._roll_over()
            for counter in (
                self._ledger.current_period.daily,
                self._ledger.current_period.monthly,
            ):
                counter.calls += 1
                counter.input_tokens += input_tokens
                counter.output_tokens += output_tokens
                counter.estimated_cost += cost
            self._ledger.last_updated = self._now()
            self._save()

        logger.info(
            "Recorded API usage",
            tokens=input_tokens + output_tokens,
            cost=round(cost, 4),
        )

    def current_usage(self) -> UsageSnapshot:
        """Return usage fractions for what has been recorded so far."""
        with self._lock:
            self._roll_over()
            return self._snapshot(
                self._ledger.current_period.daily,
                self._ledger.current_period.monthly,
            )

    def history(self) -> List[HistoryEntry]:
        """Return a copy of the archived period counters."""
        with self._lock:
            return [entry.model_copy() for entry in self._ledger.history]

    def current_period(self) -> CurrentPeriod:
        """Return a copy of the live daily and monthly counters."""
        with self._lock:
            self._roll_over()
            return self._ledger.current_period.model_copy(deep=True)

    def usage_report(self) -> str:
        """Render the current usage as a markdown status block."""
        limits = self.config.limits
        with self._lock:
            self._roll_over()
            daily = self._ledger.current_period.daily.model_copy()
            monthly = self._ledger.current_period.monthly.model_copy()

        daily_pct = _percent(daily.calls / limits.daily_calls)
        monthly_pct = _percent(monthly.calls / limits.monthly_calls)

        lines = [
            "## 📊 API Usage Status",
            "",
            f"**Today ({daily.date})**:",
            f"- Calls: {daily.calls}/{limits.daily_calls} ({daily_pct}%)",
            f"- Tokens: {daily.total_tokens:,}/{limits.daily_tokens:,}",
            f"- Cost: ${daily.estimated_cost:.2f}/${limits.daily_cost:g}",
            "",
            f"**This Month ({monthly.month})**:",
            f"- Calls: {monthly.calls}/{limits.monthly_calls} ({monthly_pct}%)",
            f"- Tokens: {monthly.total_tokens:,}/{limits.monthly_tokens:,}",
            f"- Cost: ${monthly.estimated_cost:.2f}/${limits.monthly_cost:g}",
            "",
        ]

        if daily_pct >= 90 or monthly_pct >= 90:
            lines.append("**Status**: Near limit - processing restricted to critical issues only")
        elif daily_pct >= 80 or monthly_pct >= 80:
            lines.append("**Status**: High usage - monitoring closely")
        else:
            lines.append("**Status**: Normal usage levels")

        lines.extend(["", f"*Model: {self.config.pricing.model}*"])
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _snapshot(
        self,
        daily: PeriodCounter,
        monthly: PeriodCounter,
        extra_calls: int = 0,
        extra_tokens: int = 0,
        extra_cost: float = 0.0,
    ) -> UsageSnapshot:
        limits = self.config.limits

        def period(counter: PeriodCounter, calls: int, tokens: int, cost: float) -> PeriodUsage:
            return PeriodUsage(
                calls=DimensionUsage(
                    current=counter.calls,
                    limit=calls,
                    percentage=(counter.calls + extra_calls) / calls,
                ),
                tokens=DimensionUsage(
                    current=counter.total_tokens,
                    limit=tokens,
                    percentage=(counter.total_tokens + extra_tokens) / tokens,
                ),
                cost=DimensionUsage(
                    current=counter.estimated_cost,
                    limit=cost,
                    percentage=(counter.estimated_cost + extra_cost) / cost,
                ),
            )

        return UsageSnapshot(
            daily=period(daily, limits.daily_calls, limits.daily_tokens, limits.daily_cost),
            monthly=period(monthly, limits.monthly_calls, limits.monthly_tokens, limits.monthly_cost),
        )

    @staticmethod
    def _warnings(snapshot: UsageSnapshot, daily_threshold: float, monthly_threshold: float) -> List[str]:
        warnings = []
        for label, usage, threshold in (
            ("Daily", snapshot.daily, daily_threshold),
            ("Monthly", snapshot.monthly, monthly_threshold),
        ):
            if usage.calls.percentage >= threshold:
                warnings.append(
                    f"{label} API calls at {_percent(usage.calls.percentage)}% "
                    f"({int(usage.calls.current)}/{int(usage.calls.limit)})"
                )
            if usage.tokens.percentage >= threshold:
                warnings.append(
                    f"{label} tokens at {_percent(usage.tokens.percentage)}% "
                    f"({int(usage.tokens.current)}/{int(usage.tokens.limit)})"
                )
            if usage.cost.percentage >= threshold:
                warnings.append(
                    f"{label} cost at {_percent(usage.cost.percentage)}% "
                    f"(${usage.cost.current:.2f}/${usage.cost.limit:g})"
                )
        return warnings

    @staticmethod
    def _recommendations(snapshot: UsageSnapshot, warnings: List[str]) -> List[str]:
        recommendations = []
        if warnings:
            recommendations.extend([
                "Consider processing only critical issues until usage resets",
                "Batch similar issues to reduce API calls",
                "Review duplicate detection to reduce unnecessary API calls",
            ])
        if snapshot.daily.calls.percentage >= 0.9 or snapshot.monthly.calls.percentage >= 0.9:
            recommendations.extend([
                "Enable emergency mode: process only critical/urgent issues",
                "Consider increasing API limits if budget allows",
            ])
        return recommendations

    def _period_ids(self) -> Tuple[str, str]:
        now = self._now()
        return now.strftime("%Y-%m-%d"), now.strftime("%Y-%m")

    def _fresh_ledger(self) -> UsageLedger:
        today, month = self._period_ids()
        return UsageLedger(
            last_updated=self._now(),
            current_period=CurrentPeriod(
                daily=DailyCounter(date=today),
                monthly=MonthlyCounter(month=month),
            ),
        )

    def _roll_over(self) -> None:
        today, month = self._period_ids()
        current = self._ledger.current_period
        changed = False

        if current.daily.date != today:
            self._ledger.history.append(_archive(current.daily, current.daily.date, PeriodType.DAILY))
            current.daily = DailyCounter(date=today)
            changed = True
            logger.info("Daily usage period rolled over", date=today)

        if current.monthly.month != month:
            self._ledger.history.append(_archive(current.monthly, current.monthly.month, PeriodType.MONTHLY))
            current.monthly = MonthlyCounter(month=month)
            changed = True
            logger.info("Monthly usage period rolled over", month=month)

        if changed:
            self._prune_history()
            self._save()

    def _prune_history(self) -> None:
        now = self._now()
        kept = []
        for entry in self._ledger.history:
            entry_date = _parse_period(entry.date)
            if entry_date is None:
                continue
            max_age = DAILY_HISTORY_DAYS if entry.type == PeriodType.DAILY else MONTHLY_HISTORY_DAYS
            if now - entry_date <= timedelta(days=max_age):
                kept.append(entry)
        self._ledger.history = kept

    def _load(self) -> UsageLedger:
        if self.usage_file.exists():
            try:
                raw = self.usage_file.read_text(encoding="utf-8")
                ledger = UsageLedger.model_validate(json.loads(raw))
                logger.info("Loaded usage ledger", path=str(self.usage_file))
                return ledger
            except (OSError, ValueError, ValidationError) as e:
                logger.warning(
                    "Failed to load usage ledger, starting fresh",
                    path=str(self.usage_file),
                    error=str(e),
                )

        self._ledger = self._fresh_ledger()
        self._save()
        return self._ledger

    def _save(self) -> None:
        try:
            atomic_write(self.usage_file, self._ledger.model_dump_json(by_alias=True, indent=2))
        except OSError as e:
            logger.error(
                "Failed to persist usage ledger",
                path=str(self.usage_file),
                error=str(e),
            )


def _archive(counter: PeriodCounter, period_id: str, period_type: PeriodType) -> HistoryEntry:
    return HistoryEntry(
        date=period_id,
        type=period_type,
        calls=counter.calls,
        input_tokens=counter.input_tokens,
        output_tokens=counter.output_tokens,
        estimated_cost=counter.estimated_cost,
    )


def _parse_period(period_id: str) -> Optional[datetime]:
    for fmt in ("%Y-%m-%d", "%Y-%m"):
        try:
            return datetime.strptime(period_id, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None
