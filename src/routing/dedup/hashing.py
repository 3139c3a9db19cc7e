"""Content hashing and issue identity for duplicate detection.

Normalization makes the hash stable across trivial formatting changes:
title and body are each lowercased, trimmed, whitespace-collapsed and have
URLs replaced by a placeholder; labels are lowercased, sorted and
comma-joined.
"""

import hashlib
import re

from src.routing.models import Issue


URL_PATTERN = re.compile(r"https?://[^\s)]+", re.IGNORECASE)
WHITESPACE_PATTERN = re.compile(r"\s+")
URL_PLACEHOLDER = "[URL]"

# Length of the hash fragment embedded in destination issue bodies
SHORT_HASH_LENGTH = 16


def _normalize_text(text: str) -> str:
    text = WHITESPACE_PATTERN.sub(" ", (text or "").lower().strip())
    return URL_PATTERN.sub(URL_PLACEHOLDER, text)


def normalize_content(issue: Issue) -> str:
    """Build the normalized ``title|body|labels`` string for an issue."""
    title = _normalize_text(issue.title)
    body = _normalize_text(issue.body)
    labels = ",".join(sorted(label.lower() for label in issue.labels))
    return f"{title}|{body}|{labels}"


def compute_content_hash(issue: Issue) -> str:
    """Return the SHA-256 hex digest of the normalized issue content."""
    return hashlib.sha256(normalize_content(issue).encode("utf-8")).hexdigest()


def short_content_hash(issue: Issue) -> str:
    """Return the hash fragment used for traceability in issue bodies."""
    return compute_content_hash(issue)[:SHORT_HASH_LENGTH]


def compute_issue_key(issue: Issue) -> str:
    """Return the ledger key for an issue.

    Issues with a number are keyed by source repository and number. Issues
    without one (e.g. chat exports) fall back to author plus a title digest.
    """
    if issue.number:
        return f"{issue.source_repository or 'unknown'}-{issue.number}"
    title_digest = hashlib.md5(issue.title.encode("utf-8")).hexdigest()[:8]
    return f"{issue.author}-{title_digest}"


def edit_distance_ratio(previous_length: int, current_length: int) -> float:
    """Approximate how much an issue changed from its content lengths.

    This is a length-ratio approximation (``1 - shorter / longer``), not a
    true Levenshtein distance. Two edits of equal length score 0.

    Args:
        previous_length: Normalized content length when last processed.
        current_length: Normalized content length now.

    Returns:
        A value in [0, 1].
    """
    if previous_length == 0 and current_length == 0:
        return 0.0
    if previous_length == 0 or current_length == 0:
        return 1.0
    shorter = min(previous_length, current_length)
    longer = max(previous_length, current_length)
    return 1.0 - (shorter / longer)
