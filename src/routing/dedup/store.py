"""Persistent duplicate-detection ledger.

The store keeps one record per issue key and answers duplicate queries with
three checks, first hit wins:

1. exact content-hash match against any record in the lookback window
2. same issue key: identical content, edited within the skip window, or an
   edit below the significance threshold
3. same source permalink as a record in the lookback window

Only records of successful attempts count as prior work. Failed attempts
are kept for accounting and edit tracking but never suppress a retry.

The ledger is a single JSON document. Reads that fail start from an empty
ledger; writes are atomic and failures are logged, never raised.
"""

import json
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError

from src.routing.config import DuplicateDetectionConfig
from src.routing.dedup.hashing import (
    compute_content_hash,
    compute_issue_key,
    edit_distance_ratio,
    normalize_content,
)
from src.routing.dedup.models import (
    DuplicateCheckResult,
    DuplicateReason,
    DuplicateStoreStats,
    LedgerDocument,
    LedgerSettings,
    ProcessedIssue,
    ProcessingOutcome,
)
from src.routing.models import ClassificationResult, Issue
from src.routing.persistence import atomic_write


logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_hours(hours: float) -> str:
    return str(int(hours)) if float(hours).is_integer() else str(hours)


class DuplicateStore:
    """Ledger of processed issues used to suppress redundant reprocessing.

    All load-modify-persist sequences run under a single lock so concurrent
    router invocations cannot lose updates.

    Attributes:
        config: Duplicate detection settings.
        history_file: Path of the JSON ledger.
    """

    def __init__(
        self,
        config: DuplicateDetectionConfig,
        history_file: Path,
        now_fn: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.history_file = Path(history_file)
        self._now = now_fn or _utcnow
        self._lock = threading.RLock()
        self._records: Dict[str, ProcessedIssue] = {}
        self._hash_index: Dict[str, List[str]] = {}
        self._load()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def check_duplicate(
        self,
        issue: Issue,
        destination: Optional[str] = None,
    ) -> DuplicateCheckResult:
        """Decide whether an issue duplicates previously processed work.

        Args:
            issue: The issue being routed.
            destination: Classified destination. When given, only records
                routed to the same destination (or with no destination
                recorded) are considered.

        Returns:
            DuplicateCheckResult describing the first check that hit.
        """
        if not self.config.enabled:
            return DuplicateCheckResult.not_duplicate(DuplicateReason.DISABLED.value)

        content_hash = compute_content_hash(issue)
        issue_key = compute_issue_key(issue)

        with self._lock:
            for key in self._hash_index.get(content_hash, []):
                record = self._records.get(key)
                if record and self._is_candidate(record, destination):
                    logger.info(
                        "Duplicate found by content hash",
                        issue_key=issue_key,
                        matched_key=key,
                    )
                    return DuplicateCheckResult.from_record(
                        record, DuplicateReason.EXACT_CONTENT_MATCH.value
                    )

            existing = self._records.get(issue_key)
            edit_result: Optional[DuplicateCheckResult] = None
            if existing and self._is_candidate(existing, destination):
                edit_result = self._check_edit(issue, existing, content_hash)
                if edit_result.is_duplicate:
                    logger.info(
                        "Duplicate found by issue key",
                        issue_key=issue_key,
                        reason=edit_result.reason,
                    )
                    return edit_result

            if issue.slack_permalink:
                for key, record in self._records.items():
                    if key == issue_key:
                        continue
                    if (
                        record.slack_permalink == issue.slack_permalink
                        and self._is_candidate(record, destination)
                    ):
                        logger.info(
                            "Duplicate found by permalink",
                            issue_key=issue_key,
                            matched_key=key,
                        )
                        return DuplicateCheckResult.from_record(
                            record, DuplicateReason.PERMALINK_MATCH.value
                        )

        if edit_result is not None:
            return edit_result
        return DuplicateCheckResult.not_duplicate()

    def get(self, issue_key: str) -> Optional[ProcessedIssue]:
        """Return the ledger entry for an issue key, if present."""
        with self._lock:
            return self._records.get(issue_key)

    def stats(self) -> DuplicateStoreStats:
        """Summarize the ledger contents."""
        with self._lock:
            records = list(self._records.values())
        if not records:
            return DuplicateStoreStats()
        processed = [r.processed_at for r in records]
        return DuplicateStoreStats(
            total_records=len(records),
            total_api_calls=sum(r.api_calls for r in records),
            failed_records=sum(1 for r in records if not r.succeeded),
            oldest_entry=min(processed),
            newest_entry=max(processed),
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_processing(
        self,
        issue: Issue,
        classification: ClassificationResult,
        api_calls: int,
        outcome: ProcessingOutcome,
        destination_number: Optional[int] = None,
        destination_url: Optional[str] = None,
    ) -> ProcessedIssue:
        """Write or overwrite the ledger entry for an issue and persist it.

        Call once per concluded processing attempt, after every external
        side effect of the attempt has happened.

        Args:
            issue: The processed issue.
            classification: Classification used for the attempt.
            api_calls: External API calls consumed.
            outcome: Whether the attempt succeeded.
            destination_number: Destination issue number, when known.
            destination_url: Destination issue URL, when known.

        Returns:
            The stored ProcessedIssue.
        """
        now = self._now()
        content_hash = compute_content_hash(issue)
        issue_key = compute_issue_key(issue)

        with self._lock:
            previous = self._records.get(issue_key)
            edit_count = 0
            if previous is not None:
                edit_count = previous.edit_count
                if previous.content_hash != content_hash:
                    edit_count += 1

            record = ProcessedIssue(
                issue_id=issue_key,
                content_hash=content_hash,
                content_length=len(normalize_content(issue)),
                processed_at=now,
                last_edit_at=now,
                edit_count=edit_count,
                classification=classification.to_dict(),
                api_calls=api_calls,
                routing_result=outcome,
                slack_permalink=issue.slack_permalink,
                destination_repo=classification.repo,
                destination_number=destination_number,
                destination_url=destination_url,
            )

            if previous is not None:
                self._unindex(issue_key, previous.content_hash)
            self._records[issue_key] = record
            self._index(issue_key, content_hash)
            self._save()

        logger.info(
            "Recorded processing",
            issue_key=issue_key,
            content_hash=content_hash[:8],
            outcome=outcome.value,
            api_calls=api_calls,
        )
        return record

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_within_lookback(self, timestamp: datetime) -> bool:
        return self._now() - timestamp < timedelta(days=self.config.lookback_days)

    def _is_candidate(self, record: ProcessedIssue, destination: Optional[str]) -> bool:
        if not record.succeeded or not self._is_within_lookback(record.processed_at):
            return False
        if destination and record.destination_repo:
            return record.destination_repo == destination
        return True

    def _check_edit(
        self,
        issue: Issue,
        existing: ProcessedIssue,
        content_hash: str,
    ) -> DuplicateCheckResult:
        if content_hash == existing.content_hash:
            return DuplicateCheckResult.from_record(
                existing, DuplicateReason.IDENTICAL_CONTENT.value, edit_distance=0.0
            )

        last_edit = existing.last_edit_at or existing.processed_at
        window = timedelta(hours=self.config.skip_edited_within_hours)
        if self._now() - last_edit < window:
            reason = f"edited-within-{_format_hours(self.config.skip_edited_within_hours)}h"
            return DuplicateCheckResult.from_record(existing, reason)

        distance = edit_distance_ratio(
            existing.content_length,
            len(normalize_content(issue)),
        )
        if distance < self.config.edit_threshold:
            return DuplicateCheckResult.from_record(
                existing, DuplicateReason.MINOR_EDIT.value, edit_distance=distance
            )
        return DuplicateCheckResult.not_duplicate(
            DuplicateReason.SIGNIFICANT_EDIT.value, edit_distance=distance
        )

    def _index(self, issue_key: str, content_hash: str) -> None:
        keys = self._hash_index.setdefault(content_hash, [])
        if issue_key not in keys:
            keys.append(issue_key)

    def _unindex(self, issue_key: str, content_hash: str) -> None:
        keys = self._hash_index.get(content_hash)
        if not keys:
            return
        if issue_key in keys:
            keys.remove(issue_key)
        if not keys:
            del self._hash_index[content_hash]

    def _rebuild_index(self) -> None:
        self._hash_index = {}
        for key, record in self._records.items():
            self._index(key, record.content_hash)

    def _load(self) -> None:
        if not self.history_file.exists():
            logger.info("No processing history found, starting fresh", path=str(self.history_file))
            return

        try:
            raw = self.history_file.read_text(encoding="utf-8")
            document = LedgerDocument.model_validate(json.loads(raw))
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(
                "Failed to load processing history, starting fresh",
                path=str(self.history_file),
                error=str(e),
            )
            return

        self._records = dict(document.processed_issues)
        self._rebuild_index()
        logger.info("Loaded processing history", records=len(self._records))

    def _garbage_collect(self) -> None:
        before = len(self._records)
        kept = {
            key: record
            for key, record in self._records.items()
            if self._is_within_lookback(record.processed_at)
        }
        if len(kept) > self.config.max_history_entries:
            newest = sorted(
                kept.items(),
                key=lambda item: item[1].processed_at,
                reverse=True,
            )[: self.config.max_history_entries]
            kept = dict(newest)
        self._records = kept
        if len(kept) != before:
            self._rebuild_index()
            logger.info("Evicted processing history entries", evicted=before - len(kept))

    def _save(self) -> None:
        self._garbage_collect()
        document = LedgerDocument(
            last_cleanup=self._now(),
            settings=LedgerSettings(
                lookback_days=self.config.lookback_days,
                edit_threshold=self.config.edit_threshold,
                max_history_entries=self.config.max_history_entries,
            ),
            processed_issues=self._records,
        )
        try:
            atomic_write(self.history_file, document.model_dump_json(by_alias=True, indent=2))
        except OSError as e:
            logger.error(
                "Failed to persist processing history",
                path=str(self.history_file),
                error=str(e),
            )

