"""Priority processor with batch and deferral queues.

Scores each issue's urgency, importance and business impact from keyword,
label, repository and authorship signals, combines the result with the
current usage snapshot into a processing decision, and keeps the in-memory
batch and deferral queues.

Queues are plain lists (arenas) of candidates with one entry per issue key;
re-queueing an issue replaces its previous entry. All queue access runs
under a single lock.

Source:
- src/routing/config.py (PriorityConfig)
- src/routing/usage/models.py (UsageSnapshot)
"""

import logging
import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from src.routing.config import PriorityConfig
from src.routing.dedup.hashing import compute_issue_key
from src.routing.models import Issue
from src.routing.priority.models import (
    BatchCandidate,
    PriorityCategory,
    PriorityScore,
    ProcessingDecision,
    QueueStats,
)
from src.routing.usage.models import UsageSnapshot


logger = logging.getLogger(__name__)


EMERGENCY_PATTERNS = (
    "production down",
    "service down",
    "data loss",
    "security breach",
    "critical vulnerability",
    "system crash",
    "cannot access",
)

USER_FACING_KEYWORDS = ("ui", "user", "interface", "experience", "usability", "accessibility")
CRITICAL_IMPACT_KEYWORDS = ("data loss", "security", "vulnerability", "crash", "corruption")
PERFORMANCE_KEYWORDS = ("slow", "performance", "timeout", "hang", "freeze")

BOT_MARKERS = ("bot", "action")

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "is", "are", "was", "were", "be", "been", "being", "have",
    "has", "had", "do", "does", "did", "will", "would", "could", "should",
})
MAX_KEYWORDS = 20
NON_LETTERS = re.compile(r"[^a-zA-Z\s]")

RECENT_ISSUE_HOURS = 2
DEFERRAL_MAX_AGE = timedelta(days=7)
DEFERRED_RELEASE_LIMIT = 5

CATEGORY_ORDER = (
    PriorityCategory.EMERGENCY,
    PriorityCategory.HIGH,
    PriorityCategory.MEDIUM,
    PriorityCategory.LOW,
)

# USD per token, by decision
COST_PER_TOKEN = {
    ProcessingDecision.IMMEDIATE: 0.018,
    ProcessingDecision.BATCH: 0.012,
    ProcessingDecision.DEFERRED: 0.018,
    ProcessingDecision.BLOCKED: 0.0,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _contains_any(content: str, keywords: Sequence[str]) -> bool:
    return any(keyword.lower() in content for keyword in keywords)


def _clamp(score: float) -> float:
    return round(min(score, 1.0), 4)


def extract_keywords(text: str) -> List[str]:
    """Extract up to 20 content words used for similarity scoring.

    Args:
        text: Free text (title and body).

    Returns:
        Lowercased words longer than two letters, stop words removed,
        in order of appearance.
    """
    words = NON_LETTERS.sub(" ", text.lower()).split()
    keywords = [w for w in words if len(w) > 2 and w not in STOP_WORDS]
    return keywords[:MAX_KEYWORDS]


def calculate_similarity(first: Issue, second: Issue) -> float:
    """Score how alike two issues are.

    Weighted sum of label overlap (30%), same source repository (20%) and
    keyword overlap (50%).

    Args:
        first: One issue.
        second: The other issue.

    Returns:
        Similarity in [0, 1].
    """
    similarity = 0.0

    common_labels = [label for label in first.labels if label in second.labels]
    similarity += 0.3 * len(common_labels) / max(len(first.labels), len(second.labels), 1)

    if (first.source_repository or "") == (second.source_repository or ""):
        similarity += 0.2

    keywords_first = extract_keywords(f"{first.title} {first.body}")
    keywords_second = extract_keywords(f"{second.title} {second.body}")
    common_keywords = [word for word in keywords_first if word in keywords_second]
    similarity += 0.5 * len(common_keywords) / max(len(keywords_first), len(keywords_second), 1)

    return min(similarity, 1.0)


class PriorityProcessor:
    """Scores issues and manages the batch and deferral queues.

    Attributes:
        config: Keyword lists, thresholds and batching settings.
    """

    def __init__(
        self,
        config: PriorityConfig,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self._now = now_fn or _utcnow
        self._lock = threading.RLock()
        self._batch_queue: List[BatchCandidate] = []
        self._deferral_queue: List[BatchCandidate] = []

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def analyze_priority(
        self,
        issue: Issue,
        usage_snapshot: Optional[UsageSnapshot] = None,
    ) -> PriorityScore:
        """Score an issue and decide how to process it.

        Args:
            issue: The issue to score.
            usage_snapshot: Current usage. Without it the decision is always
                ``immediate``.

        Returns:
            PriorityScore with sub-scores, category and decision.
        """
        urgency = self.calculate_urgency(issue)
        importance = self.calculate_importance(issue)
        business_impact = self.calculate_business_impact(issue)
        overall = _clamp(0.4 * urgency + 0.3 * importance + 0.3 * business_impact)

        reasoning: List[str] = []
        if urgency >= 0.9 or self.is_emergency(issue):
            category = PriorityCategory.EMERGENCY
            reasoning.append("Emergency: critical system issue or security vulnerability")
        elif overall >= 0.8:
            category = PriorityCategory.HIGH
            reasoning.append("High priority: significant impact on users or business operations")
        elif overall >= 0.5:
            category = PriorityCategory.MEDIUM
            reasoning.append("Medium priority: standard issue with moderate impact")
        else:
            category = PriorityCategory.LOW
            reasoning.append("Low priority: enhancement or minor issue")

        if _contains_any(issue.content.lower(), self.config.low_priority_keywords):
            reasoning.append("Mentions enhancement or maintenance keywords")

        decision = ProcessingDecision.IMMEDIATE
        if usage_snapshot is not None:
            decision = self._decide(issue, category, usage_snapshot.daily_peak, reasoning)

        score = PriorityScore(
            overall=overall,
            urgency=urgency,
            importance=importance,
            business_impact=business_impact,
            category=category,
            processing_decision=decision,
            reasoning=reasoning,
            estimated_api_cost=self.estimate_api_cost(issue, decision),
        )
        logger.info(
            "Priority analyzed",
            extra={
                "issue_number": issue.number,
                "category": category.value,
                "decision": decision.value,
                "overall": overall,
            },
        )
        return score

    def _decide(
        self,
        issue: Issue,
        category: PriorityCategory,
        daily_usage: float,
        reasoning: List[str],
    ) -> ProcessingDecision:
        thresholds = self.config.deferral_thresholds
        batching = self.config.batch_processing.enabled
        percent = round(daily_usage * 100)

        if daily_usage >= thresholds.emergency_only_percentage:
            if category == PriorityCategory.EMERGENCY:
                return ProcessingDecision.IMMEDIATE
            reasoning.append(f"API usage at {percent}% - emergency issues only")
            return ProcessingDecision.BLOCKED

        if daily_usage >= thresholds.api_usage_percentage:
            if category == PriorityCategory.LOW:
                reasoning.append(f"API usage at {percent}% - deferring low priority")
                return ProcessingDecision.DEFERRED
            if category == PriorityCategory.MEDIUM and batching:
                reasoning.append("Medium priority queued for batch processing")
                return ProcessingDecision.BATCH
            return ProcessingDecision.IMMEDIATE

        if category == PriorityCategory.MEDIUM and batching:
            similar = self.find_similar_issues(issue)
            if len(similar) >= 2:
                reasoning.append(f"Found {len(similar)} similar issues - batching for efficiency")
                return ProcessingDecision.BATCH

        return ProcessingDecision.IMMEDIATE

    def calculate_urgency(self, issue: Issue) -> float:
        """Urgency: base 0.3, emergency keywords +0.6, high keywords +0.3,
        critical labels +0.4, created within 2 hours +0.2."""
        content = issue.content.lower()
        score = 0.3
        if _contains_any(content, self.config.emergency_keywords):
            score += 0.6
        if _contains_any(content, self.config.high_priority_keywords):
            score += 0.3
        if self._has_critical_label(issue):
            score += 0.4
        if self._now() - issue.created_at <= timedelta(hours=RECENT_ISSUE_HOURS):
            score += 0.2
        return _clamp(score)

    def calculate_importance(self, issue: Issue) -> float:
        """Importance: base 0.4, production repo +0.3, human author +0.2,
        multiple assignees +0.1."""
        score = 0.4
        repository = (issue.source_repository or "").lower()
        if repository and any(repo.lower() in repository for repo in self.config.production_repos):
            score += 0.3
        author = issue.author.lower()
        if not any(marker in author for marker in BOT_MARKERS):
            score += 0.2
        if len(issue.assignees) > 1:
            score += 0.1
        return _clamp(score)

    def calculate_business_impact(self, issue: Issue) -> float:
        """Business impact: base 0.3, user-facing +0.2, data/security/crash
        +0.4, performance +0.3."""
        content = issue.content.lower()
        score = 0.3
        if _contains_any(content, USER_FACING_KEYWORDS):
            score += 0.2
        if _contains_any(content, CRITICAL_IMPACT_KEYWORDS):
            score += 0.4
        if _contains_any(content, PERFORMANCE_KEYWORDS):
            score += 0.3
        return _clamp(score)

    def is_emergency(self, issue: Issue) -> bool:
        """Whether the issue matches an emergency pattern or carries a critical label."""
        return _contains_any(issue.content.lower(), EMERGENCY_PATTERNS) or self._has_critical_label(issue)

    def _has_critical_label(self, issue: Issue) -> bool:
        labels = {label.lower() for label in issue.labels}
        return any(label.lower() in labels for label in self.config.critical_labels)

    @staticmethod
    def estimate_api_cost(issue: Issue, decision: ProcessingDecision) -> float:
        """Rough USD cost of processing an issue under a decision."""
        base_tokens = 1000 + (len(issue.title) + len(issue.body)) * 0.5
        return base_tokens * COST_PER_TOKEN[decision] / 1000

    # ------------------------------------------------------------------
    # Queues
    # ------------------------------------------------------------------

    def find_similar_issues(self, issue: Issue) -> List[BatchCandidate]:
        """Return batch-queued candidates similar to an issue, most similar first."""
        threshold = self.config.batch_processing.similarity_threshold
        issue_key = compute_issue_key(issue)
        similar = []
        with self._lock:
            for candidate in self._batch_queue:
                if candidate.issue_key == issue_key:
                    continue
                similarity = calculate_similarity(issue, candidate.issue)
                if similarity >= threshold:
                    similar.append(candidate.model_copy(update={"similarity": similarity}))
        similar.sort(key=lambda c: c.similarity or 0.0, reverse=True)
        return similar

    def queue_issue(
        self,
        issue: Issue,
        score: PriorityScore,
        source_repo: Optional[str] = None,
    ) -> bool:
        """Place a batch or deferred issue in its queue.

        Immediate issues need no queueing and blocked issues are dropped.

        Args:
            issue: The issue to queue.
            score: The score whose decision selects the queue.
            source_repo: Repository the issue came from, kept for re-routing.

        Returns:
            True if the issue was queued.
        """
        decision = score.processing_decision
        if decision == ProcessingDecision.IMMEDIATE:
            return False
        if decision == ProcessingDecision.BLOCKED:
            logger.warning(
                "Issue blocked due to API limits",
                extra={"issue_number": issue.number, "title": issue.title[:100]},
            )
            return False

        candidate = BatchCandidate(
            issue=issue,
            priority=score,
            added_at=self._now(),
            source_repo=source_repo,
        )
        with self._lock:
            self._remove_key(candidate.issue_key)
            if decision == ProcessingDecision.BATCH:
                self._batch_queue.append(candidate)
                size = sum(1 for c in self._batch_queue if c.priority.category == score.category)
                logger.info(
                    "Issue added to batch queue",
                    extra={"category": score.category.value, "queue_size": size},
                )
            else:
                self._deferral_queue.append(candidate)
                self._evict_expired_deferrals()
                logger.info(
                    "Issue deferred",
                    extra={"queue_size": len(self._deferral_queue)},
                )
        return True

    def get_next_batch(self, max_batch_size: Optional[int] = None) -> List[BatchCandidate]:
        """Release batch-queued candidates that are ready.

        A category group is ready when it holds two or more candidates, or
        for the candidates that have waited at least the batch window.

        Args:
            max_batch_size: Upper bound on released candidates (defaults to
                the configured batch size).

        Returns:
            Released candidates, removed from the queue.
        """
        limit = max_batch_size or self.config.batch_processing.max_batch_size
        window = timedelta(minutes=self.config.batch_processing.batch_window_minutes)
        now = self._now()
        released: List[BatchCandidate] = []

        with self._lock:
            groups: Dict[PriorityCategory, List[BatchCandidate]] = {}
            for candidate in self._batch_queue:
                groups.setdefault(candidate.priority.category, []).append(candidate)

            for category in CATEGORY_ORDER:
                group = groups.get(category, [])
                if len(group) >= 2:
                    ready = group
                else:
                    ready = [c for c in group if now - c.added_at >= window]
                for candidate in ready:
                    if len(released) >= limit:
                        break
                    released.append(candidate)
                if len(released) >= limit:
                    break

            released_ids = {id(c) for c in released}
            self._batch_queue = [c for c in self._batch_queue if id(c) not in released_ids]

        if released:
            logger.info("Released batch", extra={"batch_size": len(released)})
        return released

    def process_deferred_queue(self, usage_snapshot: UsageSnapshot) -> List[BatchCandidate]:
        """Release deferred candidates once usage is back under the deferral threshold.

        Entries older than seven days are evicted unprocessed first. At most
        five candidates are released per call, oldest first.

        Args:
            usage_snapshot: Current usage.

        Returns:
            Released candidates, removed from the queue.
        """
        daily_usage = usage_snapshot.daily_peak
        with self._lock:
            self._evict_expired_deferrals()
            if daily_usage >= self.config.deferral_thresholds.api_usage_percentage:
                return []
            released = self._deferral_queue[:DEFERRED_RELEASE_LIMIT]
            self._deferral_queue = self._deferral_queue[DEFERRED_RELEASE_LIMIT:]

        if released:
            logger.info(
                "Processing deferred issues",
                extra={"count": len(released), "daily_usage": round(daily_usage * 100)},
            )
        return released

    def queue_stats(self) -> QueueStats:
        """Summarize queue sizes and their estimated cost."""
        with self._lock:
            batch: Dict[str, int] = {}
            for candidate in self._batch_queue:
                key = candidate.priority.category.value
                batch[key] = batch.get(key, 0) + 1
            queued = self._batch_queue + self._deferral_queue
            return QueueStats(
                batch_queue=batch,
                deferral_queue=len(self._deferral_queue),
                total_queued=len(queued),
                estimated_cost=sum(c.priority.estimated_api_cost for c in queued),
            )

    def _remove_key(self, issue_key: str) -> None:
        self._batch_queue = [c for c in self._batch_queue if c.issue_key != issue_key]
        self._deferral_queue = [c for c in self._deferral_queue if c.issue_key != issue_key]

    def _evict_expired_deferrals(self) -> None:
        cutoff = self._now() - DEFERRAL_MAX_AGE
        before = len(self._deferral_queue)
        self._deferral_queue = [c for c in self._deferral_queue if c.added_at > cutoff]
        evicted = before - len(self._deferral_queue)
        if evicted:
            logger.info("Evicted expired deferred issues", extra={"evicted": evicted})
