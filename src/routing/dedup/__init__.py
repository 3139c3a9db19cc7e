"""Duplicate detection.

Content hashing with normalization, and the persistent ledger of processed
issues that answers "has this already been routed" queries.
"""

from src.routing.dedup.hashing import (
    compute_content_hash,
    compute_issue_key,
    edit_distance_ratio,
    normalize_content,
    short_content_hash,
)
from src.routing.dedup.models import (
    DuplicateCheckResult,
    DuplicateReason,
    DuplicateStoreStats,
    ProcessedIssue,
    ProcessingOutcome,
)
from src.routing.dedup.store import DuplicateStore

__all__ = [
    "compute_content_hash",
    "compute_issue_key",
    "DuplicateCheckResult",
    "DuplicateReason",
    "DuplicateStore",
    "DuplicateStoreStats",
    "edit_distance_ratio",
    "normalize_content",
    "ProcessedIssue",
    "ProcessingOutcome",
    "short_content_hash",
]
