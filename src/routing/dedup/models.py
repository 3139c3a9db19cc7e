"""Duplicate ledger models.

This module defines the persisted and returned shapes of the duplicate
store:
- ProcessingOutcome: success/failed outcome of a processing attempt
- ProcessedIssue: one ledger entry per issue key
- LedgerDocument: the JSON document written to disk
- DuplicateCheckResult: answer to "is this a duplicate"

Ledger fields are serialized in camelCase so the document layout stays
``{version, lastCleanup, settings, processedIssues: {issueKey: record}}``.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


LEDGER_VERSION = "1.0"


class DuplicateReason(str, Enum):
    """Why a duplicate check returned its answer."""

    EXACT_CONTENT_MATCH = "exact-content-match"
    IDENTICAL_CONTENT = "identical-content"
    MINOR_EDIT = "minor-edit"
    SIGNIFICANT_EDIT = "significant-edit"
    PERMALINK_MATCH = "slack-permalink-match"
    REMOTE_MATCH = "remote-search-match"
    NO_DUPLICATE = "no-duplicate-found"
    DISABLED = "duplicate-detection-disabled"


class ProcessingOutcome(str, Enum):
    """Outcome of a processing attempt recorded in the ledger."""

    SUCCESS = "success"
    FAILED = "failed"


class _LedgerModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class ProcessedIssue(_LedgerModel):
    """Ledger entry for one uniquely identified issue.

    Attributes:
        issue_id: The issue key (source repo + number, or author + title digest).
        content_hash: SHA-256 of the normalized content when processed.
        content_length: Length of the normalized content when processed.
        processed_at: Last time this issue was processed.
        last_edit_at: Last time a new version of the content was recorded.
        edit_count: How many times the content changed between attempts.
        classification: The classification produced, as a dictionary.
        api_calls: External API calls consumed by the attempt.
        routing_result: Outcome of the attempt.
        slack_permalink: Optional source thread permalink.
        destination_repo: Where the issue was routed.
        destination_number: Destination issue number, when known.
        destination_url: Destination issue URL, when known.
    """

    issue_id: str
    content_hash: str
    content_length: int = 0
    processed_at: datetime
    last_edit_at: Optional[datetime] = None
    edit_count: int = 0
    classification: Dict[str, Any] = Field(default_factory=dict)
    api_calls: int = 0
    routing_result: ProcessingOutcome = ProcessingOutcome.SUCCESS
    slack_permalink: Optional[str] = None
    destination_repo: Optional[str] = None
    destination_number: Optional[int] = None
    destination_url: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        """Whether the recorded attempt succeeded."""
        return self.routing_result == ProcessingOutcome.SUCCESS


class LedgerSettings(_LedgerModel):
    """Settings snapshot stored alongside the ledger."""

    lookback_days: int
    edit_threshold: float
    max_history_entries: int


class LedgerDocument(_LedgerModel):
    """The duplicate ledger as persisted to disk."""

    version: str = LEDGER_VERSION
    last_cleanup: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    settings: Optional[LedgerSettings] = None
    processed_issues: Dict[str, ProcessedIssue] = Field(default_factory=dict)


class DuplicateCheckResult(BaseModel):
    """Answer to a duplicate query.

    Attributes:
        is_duplicate: Whether the issue duplicates earlier work.
        reason: Machine-readable reason (see DuplicateReason), e.g.
            ``edited-within-24h`` for the skip window.
        matched_record: The ledger entry that matched, if any.
        edit_distance: Length-ratio edit estimate when an edit was assessed.
        existing_repo: Destination repository of the matched issue.
        existing_number: Destination issue number of the matched issue.
        existing_url: Destination issue URL of the matched issue.
    """

    is_duplicate: bool
    reason: str
    matched_record: Optional[ProcessedIssue] = None
    edit_distance: Optional[float] = None
    existing_repo: Optional[str] = None
    existing_number: Optional[int] = None
    existing_url: Optional[str] = None

    @property
    def has_destination(self) -> bool:
        """Whether the matched issue can be updated in place."""
        return bool(self.existing_repo and self.existing_number)

    @classmethod
    def not_duplicate(
        cls,
        reason: str = DuplicateReason.NO_DUPLICATE.value,
        edit_distance: Optional[float] = None,
    ) -> "DuplicateCheckResult":
        """Create a negative result."""
        return cls(is_duplicate=False, reason=reason, edit_distance=edit_distance)

    @classmethod
    def from_record(
        cls,
        record: ProcessedIssue,
        reason: str,
        edit_distance: Optional[float] = None,
    ) -> "DuplicateCheckResult":
        """Create a positive result pointing at a ledger entry."""
        return cls(
            is_duplicate=True,
            reason=reason,
            matched_record=record,
            edit_distance=edit_distance,
            existing_repo=record.destination_repo,
            existing_number=record.destination_number,
            existing_url=record.destination_url,
        )


class DuplicateStoreStats(BaseModel):
    """Summary of the duplicate ledger."""

    total_records: int = 0
    total_api_calls: int = 0
    failed_records: int = 0
    oldest_entry: Optional[datetime] = None
    newest_entry: Optional[datetime] = None
