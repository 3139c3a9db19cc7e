"""Routing event models for observability.

This module defines the data models for routing events, including:
- EventType: Enum of all event types emitted by the router
- RoutingEvent: Structured event with all required metadata

Events are emitted for monitoring, alerting, and debugging purposes.
They provide visibility into routing health and admission decisions.

The models use Pydantic for validation, consistent with the rest of the
routing package.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of events emitted by the router.

    Attributes:
        STAGE_TRANSITION: Issue moved from one routing stage to another.
        ROUTED: Issue was created or updated at its destination.
        DUPLICATE: Issue was recognized as a duplicate of earlier work.
        QUEUED: Issue was placed in the batch or deferral queue.
        BLOCKED: Issue was refused because of API usage limits.
        ERROR: Routing failed for the issue.
    """

    STAGE_TRANSITION = "stage_transition"
    ROUTED = "routed"
    DUPLICATE = "duplicate"
    QUEUED = "queued"
    BLOCKED = "blocked"
    ERROR = "error"


class RoutingEvent(BaseModel):
    """Structured event emitted by the router.

    Attributes:
        event_type: The category of event.
        issue_id: Issue key of the routed issue (see compute_issue_key).
        repository: Destination repository, or the source repository when
            no destination is known yet.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Details Field Conventions:
        For STAGE_TRANSITION events:
            - from_stage / to_stage: Routing stages
            - decision: Processing decision, when leaving admission_check

        For ROUTED and DUPLICATE events:
            - outcome: RoutingOutcome value
            - issue_url: Destination issue URL
            - duration_seconds: Total routing time

        For QUEUED and BLOCKED events:
            - decision: Processing decision
            - duration_seconds: Total routing time

        For ERROR events:
            - error_message: Human-readable error description
            - stage: Routing stage where the error occurred
            - duration_seconds: Total routing time
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    issue_id: str = Field(
        ...,
        min_length=1,
        description="Issue key of the routed issue",
    )

    repository: str = Field(
        ...,
        min_length=1,
        description='Repository path in format "{owner}/{repo}"',
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert event to a flat dictionary suitable for structured logging."""
        return {
            "event_type": self.event_type.value,
            "issue_id": self.issue_id,
            "repository": self.repository,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
