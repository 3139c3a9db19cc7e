"""Priority scoring and queue models.

Requirements:
- Priority scores are derived per issue and never persisted
- Queued candidates keep the score that justified their queue placement
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from src.routing.dedup.hashing import compute_issue_key
from src.routing.models import Issue


class PriorityCategory(str, Enum):
    """Urgency category derived from the priority sub-scores."""

    EMERGENCY = "emergency"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ProcessingDecision(str, Enum):
    """What to do with an issue given its category and current usage.

    Attributes:
        IMMEDIATE: Process now.
        BATCH: Queue with similar issues for a later batch run.
        DEFERRED: Queue until usage drops below the deferral threshold.
        BLOCKED: Refuse; the issue is not queued.
    """

    IMMEDIATE = "immediate"
    BATCH = "batch"
    DEFERRED = "deferred"
    BLOCKED = "blocked"


class PriorityScore(BaseModel):
    """Urgency, importance and business impact of one issue.

    Attributes:
        overall: 0.4 * urgency + 0.3 * importance + 0.3 * business_impact.
        urgency: Time-sensitivity sub-score (0.0-1.0).
        importance: Repository/author sub-score (0.0-1.0).
        business_impact: User/data/performance sub-score (0.0-1.0).
        category: Category derived from the scores.
        processing_decision: Decision derived from category and usage.
        reasoning: Human-readable notes explaining the decision.
        estimated_api_cost: Rough USD cost of processing the issue.
    """

    overall: float = Field(..., ge=0.0, le=1.0)
    urgency: float = Field(..., ge=0.0, le=1.0)
    importance: float = Field(..., ge=0.0, le=1.0)
    business_impact: float = Field(..., ge=0.0, le=1.0)
    category: PriorityCategory
    processing_decision: ProcessingDecision = ProcessingDecision.IMMEDIATE
    reasoning: List[str] = Field(default_factory=list)
    estimated_api_cost: float = 0.0


class BatchCandidate(BaseModel):
    """An issue waiting in the batch or deferral queue.

    Attributes:
        issue: The queued issue.
        priority: Score that justified the queue placement.
        added_at: When the candidate was queued.
        source_repo: Repository the issue came from, for re-routing.
        similarity: Similarity to the issue being analyzed, when computed.
    """

    issue: Issue
    priority: PriorityScore
    added_at: datetime
    source_repo: Optional[str] = None
    similarity: Optional[float] = None

    @property
    def issue_key(self) -> str:
        """Stable queue key for the candidate's issue."""
        return compute_issue_key(self.issue)


class QueueStats(BaseModel):
    """Current size and estimated cost of the queues."""

    batch_queue: Dict[str, int] = Field(default_factory=dict)
    deferral_queue: int = 0
    total_queued: int = 0
    estimated_cost: float = 0.0
