"""Property-based tests for duplicate detection.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import List

from hypothesis import given, settings, strategies as st

from src.routing.config import DuplicateDetectionConfig
from src.routing.dedup import (
    DuplicateStore,
    ProcessingOutcome,
    compute_content_hash,
    edit_distance_ratio,
)
from src.routing.models import ClassificationResult, Issue


NOW = datetime(2025, 3, 14, 12, 0, 0, tzinfo=timezone.utc)

TEXT = st.text(alphabet="abcdefghijklmnop XYZ", min_size=1, max_size=60)
LABELS = st.lists(st.sampled_from(["bug", "ios", "web", "ux"]), max_size=4, unique=True)


def _make_issue(title: str, body: str, labels: List[str], number: int = 5) -> Issue:
    return Issue(
        title=title,
        body=body,
        labels=labels,
        number=number,
        author="reporter",
        source_meta={"repository": "org/inbox"},
    )


def _reformat(text: str) -> str:
    """Change case and whitespace without changing normalized content."""
    return "  " + text.upper().replace(" ", " \n\t ") + "\n"


@given(title=TEXT, body=TEXT, labels=LABELS)
@settings(max_examples=100)
def test_hash_ignores_case_whitespace_and_label_order(title, body, labels):
    """Formatting-only changes never change the content hash."""
    original = _make_issue(title, body, labels)
    reformatted = _make_issue(
        _reformat(title),
        _reformat(body),
        [label.upper() for label in reversed(labels)],
    )

    assert compute_content_hash(original) == compute_content_hash(reformatted)


@given(title=TEXT, body=TEXT, labels=LABELS)
@settings(max_examples=100)
def test_hash_ignores_url_differences(title, body, labels):
    """URLs are replaced by a placeholder before hashing."""
    first = _make_issue(title, f"{body} see https://a.example/one", labels)
    second = _make_issue(title, f"{body} see https://b.example/two?x=1", labels)

    assert compute_content_hash(first) == compute_content_hash(second)


@given(title=TEXT, body=TEXT, labels=LABELS)
@settings(max_examples=100)
def test_recorded_issue_is_always_a_duplicate(title, body, labels):
    """Checking an issue right after recording it always finds it."""
    issue = _make_issue(title, body, labels)
    with tempfile.TemporaryDirectory() as tmp:
        store = DuplicateStore(
            DuplicateDetectionConfig(),
            Path(tmp) / "processing-history.json",
            now_fn=lambda: NOW,
        )
        store.record_processing(
            issue,
            ClassificationResult(repo="org/dest", title=title, confidence=0.9),
            api_calls=1,
            outcome=ProcessingOutcome.SUCCESS,
        )

        first = store.check_duplicate(issue)
        second = store.check_duplicate(issue)

    assert first.is_duplicate is True
    assert first == second


@given(
    previous=st.integers(min_value=0, max_value=10_000),
    current=st.integers(min_value=0, max_value=10_000),
)
@settings(max_examples=100)
def test_edit_distance_ratio_is_bounded_and_symmetric(previous, current):
    """The length-ratio estimate stays in [0, 1] and ignores argument order."""
    ratio = edit_distance_ratio(previous, current)

    assert 0.0 <= ratio <= 1.0
    assert ratio == edit_distance_ratio(current, previous)
    if previous == current:
        assert ratio == 0.0
