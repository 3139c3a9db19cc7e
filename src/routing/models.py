"""Core data models for issue routing.

This module defines the value types that flow through every routing
component:
- Priority: Enum of classification priority levels
- Issue: An inbound issue report, independent of where it came from
- ClassificationResult: The routing decision produced for one Issue

Issues and classifications are immutable once constructed. Enhancing a
classification produces a new value through ``model_copy(update=...)``.

The models use Pydantic for validation, consistent with the rest of the
routing package (config.py, dedup/models.py, usage/models.py).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


FALLBACK_REASONING = "fallback — classifier unavailable"
TRIAGE_LABEL = "triage-needed"
ROUTING_FAILED_LABEL = "routing-failed"


def _unique(values: List[str]) -> List[str]:
    """Drop blank and repeated entries while preserving first-seen order."""
    seen = set()
    result = []
    for value in values:
        value = str(value).strip()
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


class Priority(str, Enum):
    """Priority assigned to a routed issue.

    Attributes:
        LOW: Nice-to-have features and minor improvements.
        MEDIUM: Standard features and non-blocking bugs.
        HIGH: Important features and bugs that affect users.
        CRITICAL: Outages, security vulnerabilities, blocking issues.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def coerce(cls, value: Any) -> "Priority":
        """Convert an arbitrary value to a Priority, defaulting to MEDIUM."""
        if isinstance(value, Priority):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.MEDIUM


class Issue(BaseModel):
    """An inbound issue report awaiting routing.

    The routing core consumes this value regardless of whether it came from
    a webhook, a chat export, or a hand-written text file.

    Attributes:
        title: Issue title.
        body: Issue body text.
        number: Numeric identifier in the source system (0 when unknown).
        url: URL of the source issue.
        author: Login or display name of the reporter.
        labels: Unique labels attached at the source.
        assignees: Unique assignees at the source.
        created_at: When the issue was created (UTC).
        slack_permalink: Optional deep link to an external chat thread.
        source_meta: Opaque key/value metadata (repository, channel, ...).
    """

    model_config = ConfigDict(frozen=True)

    title: str = Field(..., description="Issue title")

    body: str = Field(default="", description="Issue body text")

    number: int = Field(
        default=0,
        ge=0,
        description="Numeric identifier in the source system",
    )

    url: str = Field(default="", description="URL of the source issue")

    author: str = Field(default="", description="Reporter login")

    labels: List[str] = Field(
        default_factory=list,
        description="Unique labels attached at the source",
    )

    assignees: List[str] = Field(
        default_factory=list,
        description="Unique assignees at the source",
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the issue was created (UTC)",
    )

    slack_permalink: Optional[str] = Field(
        default=None,
        description="Optional deep link to an external chat thread",
    )

    source_meta: Dict[str, Any] = Field(
        default_factory=dict,
        description="Opaque source metadata",
    )

    @field_validator("labels", "assignees", mode="before")
    @classmethod
    def validate_unique(cls, v: Any) -> List[str]:
        """Normalize label and assignee collections to unique lists."""
        if v is None:
            return []
        return _unique(list(v))

    @field_validator("body", mode="before")
    @classmethod
    def validate_body(cls, v: Any) -> str:
        """Treat a missing body as empty text."""
        return "" if v is None else v

    @field_validator("created_at")
    @classmethod
    def validate_created_at(cls, v: datetime) -> datetime:
        """Assume UTC for naive timestamps."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def source_repository(self) -> Optional[str]:
        """Repository the issue was reported in, if known."""
        value = self.source_meta.get("repository")
        return str(value) if value else None

    @property
    def channel(self) -> Optional[str]:
        """Chat channel the issue was reported in, if known."""
        value = self.source_meta.get("channel")
        return str(value) if value else None

    @property
    def content(self) -> str:
        """Title and body joined by a space, as used by keyword matching."""
        return f"{self.title} {self.body}"


class ClassificationResult(BaseModel):
    """The routing decision produced for one issue.

    A classification is never mutated after creation. Re-classification or
    enhancement produces a new value.

    Attributes:
        repo: Destination repository in ``owner/repo`` form.
        title: Possibly rewritten title.
        body: Possibly rewritten body.
        labels: Labels to apply at the destination.
        assignees: Assignees to apply at the destination.
        priority: Priority of the issue.
        confidence: Confidence in the decision (0.0-1.0).
        reasoning: Human-readable explanation of the decision.
        project_fields: Field values for the destination project board.
    """

    model_config = ConfigDict(frozen=True)

    repo: str = Field(..., description="Destination repository (owner/repo)")

    title: str = Field(..., description="Possibly rewritten title")

    body: str = Field(default="", description="Possibly rewritten body")

    labels: List[str] = Field(
        default_factory=list,
        description="Labels to apply at the destination",
    )

    assignees: List[str] = Field(
        default_factory=list,
        description="Assignees to apply at the destination",
    )

    priority: Priority = Field(
        default=Priority.MEDIUM,
        description="Priority of the issue",
    )

    confidence: float = Field(
        ...,
        ge=0.0,
        le=1.0,
        description="Confidence in the decision (0.0-1.0)",
    )

    reasoning: str = Field(default="", description="Explanation of the decision")

    project_fields: Dict[str, Any] = Field(
        default_factory=dict,
        description="Field values for the destination project board",
    )

    @field_validator("labels", "assignees", mode="before")
    @classmethod
    def validate_unique(cls, v: Any) -> List[str]:
        """Normalize label and assignee collections to unique lists."""
        if v is None:
            return []
        return _unique(list(v))

    @field_validator("priority", mode="before")
    @classmethod
    def validate_priority(cls, v: Any) -> Priority:
        """Coerce unknown priority values to medium."""
        return Priority.coerce(v)

    @property
    def owner(self) -> str:
        """Owner part of the destination repository."""
        return self.repo.split("/", 1)[0]

    @property
    def repo_name(self) -> str:
        """Name part of the destination repository."""
        parts = self.repo.split("/", 1)
        return parts[1] if len(parts) == 2 else ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert classification to a JSON-compatible dictionary.

        Returns:
            dict: Dictionary representation used by the duplicate ledger.
        """
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassificationResult":
        """Create a ClassificationResult from a stored dictionary.

        Args:
            data: Dictionary produced by ``to_dict``.

        Returns:
            ClassificationResult: Reconstructed classification.

        Raises:
            pydantic.ValidationError: If the stored data is invalid.
        """
        return cls.model_validate(data)

    @classmethod
    def create_fallback(
        cls,
        issue: Issue,
        default_repo: str,
        default_labels: Optional[List[str]] = None,
        extra_label: str = TRIAGE_LABEL,
        confidence: float = 0.1,
        reasoning: str = FALLBACK_REASONING,
    ) -> "ClassificationResult":
        """Create a classification used when no real decision is available.

        The issue is sent to the default destination unchanged, tagged for
        manual triage.

        Args:
            issue: The issue being routed.
            default_repo: Configured default destination.
            default_labels: Configured default labels.
            extra_label: Label marking the fallback (``triage-needed``).
            confidence: Confidence to report.
            reasoning: Reasoning to report.

        Returns:
            ClassificationResult: The fallback classification.
        """
        return cls(
            repo=default_repo,
            title=issue.title,
            body=issue.body,
            labels=list(default_labels or []) + [extra_label],
            assignees=[],
            priority=Priority.MEDIUM,
            confidence=confidence,
            reasoning=reasoning,
            project_fields={},
        )
