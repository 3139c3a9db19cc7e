"""Routing stages, outcomes and the per-issue routing result.

Every Router invocation walks the stage machine below and returns a
RoutingResult; it never raises past its own boundary.

    start -> rule_match -> admission_check -> classify -> duplicate_check
          -> github_operation -> project_placement -> close_source -> done

Any stage may move to ``failed``. ``admission_check`` ends at ``done`` for
queued and blocked issues, and ``duplicate_check`` ends at ``done`` when a
duplicate has nothing to update.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from src.routing.dedup.models import DuplicateCheckResult
from src.routing.github.models import GitHubOperationResult
from src.routing.models import ClassificationResult
from src.routing.priority.models import PriorityScore


logger = logging.getLogger(__name__)


class RoutingStage(str, Enum):
    """Stages of routing a single issue."""

    START = "start"
    RULE_MATCH = "rule_match"
    ADMISSION_CHECK = "admission_check"
    CLASSIFY = "classify"
    DUPLICATE_CHECK = "duplicate_check"
    GITHUB_OPERATION = "github_operation"
    PROJECT_PLACEMENT = "project_placement"
    CLOSE_SOURCE = "close_source"
    DONE = "done"
    FAILED = "failed"


class RoutingOutcome(str, Enum):
    """How a routing attempt concluded.

    Attributes:
        CREATED: A new issue was created at the destination.
        UPDATED: An existing destination issue received the new report.
        DUPLICATE_SKIPPED: Duplicate of earlier work with nothing to update.
        BATCHED: Queued for batch processing.
        DEFERRED: Queued until API usage drops.
        BLOCKED: Refused because of API usage limits.
        FAILED: Routing failed.
    """

    CREATED = "created"
    UPDATED = "updated"
    DUPLICATE_SKIPPED = "duplicate_skipped"
    BATCHED = "batched"
    DEFERRED = "deferred"
    BLOCKED = "blocked"
    FAILED = "failed"


# Valid stage transitions. FAILED is reachable from every non-terminal stage.
VALID_TRANSITIONS: Dict[RoutingStage, List[RoutingStage]] = {
    RoutingStage.START: [
        RoutingStage.RULE_MATCH,
        RoutingStage.FAILED,
    ],
    RoutingStage.RULE_MATCH: [
        RoutingStage.ADMISSION_CHECK,
        RoutingStage.FAILED,
    ],
    # Queued and blocked issues finish at admission
    RoutingStage.ADMISSION_CHECK: [
        RoutingStage.CLASSIFY,
        RoutingStage.DONE,
        RoutingStage.FAILED,
    ],
    RoutingStage.CLASSIFY: [
        RoutingStage.DUPLICATE_CHECK,
        RoutingStage.FAILED,
    ],
    # Duplicates with no destination issue to update finish here
    RoutingStage.DUPLICATE_CHECK: [
        RoutingStage.GITHUB_OPERATION,
        RoutingStage.DONE,
        RoutingStage.FAILED,
    ],
    RoutingStage.GITHUB_OPERATION: [
        RoutingStage.PROJECT_PLACEMENT,
        RoutingStage.CLOSE_SOURCE,
        RoutingStage.DONE,
        RoutingStage.FAILED,
    ],
    RoutingStage.PROJECT_PLACEMENT: [
        RoutingStage.CLOSE_SOURCE,
        RoutingStage.DONE,
        RoutingStage.FAILED,
    ],
    RoutingStage.CLOSE_SOURCE: [
        RoutingStage.DONE,
        RoutingStage.FAILED,
    ],
    RoutingStage.DONE: [],
    RoutingStage.FAILED: [],
}


def is_valid_transition(from_stage: RoutingStage, to_stage: RoutingStage) -> bool:
    """Check if a stage transition is valid.

    Example:
        >>> is_valid_transition(RoutingStage.START, RoutingStage.RULE_MATCH)
        True
        >>> is_valid_transition(RoutingStage.DONE, RoutingStage.CLASSIFY)
        False
    """
    return to_stage in VALID_TRANSITIONS.get(from_stage, [])


class InvalidTransitionError(Exception):
    """Raised when the router attempts an illegal stage transition.

    Attributes:
        from_stage: The current stage.
        to_stage: The attempted target stage.
        message: Human-readable error message.
    """

    def __init__(
        self,
        from_stage: RoutingStage,
        to_stage: RoutingStage,
        message: Optional[str] = None,
    ):
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.message = message or (
            f"Invalid transition from {from_stage.value} to {to_stage.value}"
        )
        super().__init__(self.message)


class RoutingTrace:
    """Stage history and timestamped log lines of one routing attempt.

    Attributes:
        stage: Current stage.
        stages: Stages visited, in order, starting with START.
        logs: ``[timestamp] message`` lines, in order.
    """

    def __init__(self) -> None:
        self.stage = RoutingStage.START
        self.stages: List[RoutingStage] = [RoutingStage.START]
        self.logs: List[str] = []

    def advance(self, to_stage: RoutingStage) -> RoutingStage:
        """Move to the next stage.

        Returns:
            The stage that was left.

        Raises:
            InvalidTransitionError: If the move is not allowed.
        """
        if not is_valid_transition(self.stage, to_stage):
            raise InvalidTransitionError(self.stage, to_stage)
        previous = self.stage
        self.stage = to_stage
        self.stages.append(to_stage)
        return previous

    def log(self, message: str) -> None:
        """Append a timestamped log line."""
        timestamp = datetime.now(timezone.utc).isoformat()
        self.logs.append(f"[{timestamp}] {message}")
        logger.debug(message)


class RoutingResult(BaseModel):
    """Structured result of one Router invocation.

    Attributes:
        success: Whether the issue reached a satisfactory end state
            (created, updated or skipped as a duplicate).
        outcome: How the attempt concluded.
        classification: Classification used, when one was produced.
        duplicate_check: Duplicate check outcome, when the check ran.
        github_operation: Destination operation outcome, when attempted.
        priority: Priority score used for the admission decision.
        warnings: Usage warnings raised by the admission check.
        stages: Stages visited, in order.
        execution_time: Elapsed wall time in seconds.
        logs: Ordered, timestamped log lines.
        error: Error message when routing failed.
        dry_run: Whether destination writes were suppressed.
    """

    success: bool
    outcome: RoutingOutcome
    classification: Optional[ClassificationResult] = None
    duplicate_check: Optional[DuplicateCheckResult] = None
    github_operation: Optional[GitHubOperationResult] = None
    priority: Optional[PriorityScore] = None
    warnings: List[str] = Field(default_factory=list)
    stages: List[RoutingStage] = Field(default_factory=list)
    execution_time: float = 0.0
    logs: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    dry_run: bool = False
