"""Unit tests for the GitHub client and issue formatting."""

import json
from datetime import datetime, timezone
from typing import Callable, List

import httpx
import pytest

from src.routing.github import (
    GitHubAPIError,
    GitHubClient,
    RateLimitError,
    format_duplicate_comment,
    format_issue_body,
    format_routed_comment,
    split_repo,
)
from src.routing.models import ClassificationResult, Issue


def _make_client(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> GitHubClient:
    kwargs.setdefault("base_delay", 0.0)
    return GitHubClient(
        token="ghp_test",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _make_issue(**kwargs) -> Issue:
    kwargs.setdefault("title", "Widget does not refresh")
    kwargs.setdefault("body", "Stale data on the home screen.")
    kwargs.setdefault("number", 12)
    kwargs.setdefault("url", "https://github.com/org/inbox/issues/12")
    kwargs.setdefault("author", "reporter")
    kwargs.setdefault("created_at", datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc))
    return Issue(**kwargs)


class _Recorder:
    """Handler that replays queued responses and records requests."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


class TestRequest:
    """Tests for retries and error mapping."""

    def test_sends_auth_headers(self):
        recorder = _Recorder(httpx.Response(200, json={"number": 1}))
        client = _make_client(recorder)

        client.get_issue("org/repo", 1)

        request = recorder.requests[0]
        assert request.headers["Authorization"] == "Bearer ghp_test"
        assert request.headers["Accept"] == "application/vnd.github+json"
        assert request.url.path == "/repos/org/repo/issues/1"

    def test_retries_transient_status(self):
        recorder = _Recorder(
            httpx.Response(503),
            httpx.Response(502),
            httpx.Response(200, json={"number": 1}),
        )
        client = _make_client(recorder)

        assert client.get_issue("org/repo", 1) == {"number": 1}
        assert len(recorder.requests) == 3

    def test_gives_up_after_max_retries(self):
        recorder = _Recorder(*[httpx.Response(500, text="boom") for _ in range(3)])
        client = _make_client(recorder, max_retries=2)

        with pytest.raises(GitHubAPIError) as exc_info:
            client.get_issue("org/repo", 1)

        assert exc_info.value.status_code == 500
        assert len(recorder.requests) == 3

    def test_client_error_is_not_retried(self):
        recorder = _Recorder(httpx.Response(404, text="Not Found"))
        client = _make_client(recorder)

        with pytest.raises(GitHubAPIError) as exc_info:
            client.get_issue("org/repo", 1)

        assert exc_info.value.status_code == 404
        assert exc_info.value.response_body == "Not Found"
        assert len(recorder.requests) == 1

    def test_exhausted_rate_limit_raises_rate_limit_error(self):
        recorder = _Recorder(
            httpx.Response(
                403,
                headers={"x-ratelimit-remaining": "0", "retry-after": "30"},
            )
        )
        client = _make_client(recorder, max_retries=0)

        with pytest.raises(RateLimitError) as exc_info:
            client.get_issue("org/repo", 1)

        assert exc_info.value.retry_after == 30

    def test_transport_errors_are_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"number": 1})

        client = _make_client(handler)

        assert client.get_issue("org/repo", 1) == {"number": 1}
        assert len(calls) == 2

    def test_persistent_transport_errors_raise(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = _make_client(handler, max_retries=1)

        with pytest.raises(GitHubAPIError, match="Request failed after 1 retries"):
            client.get_issue("org/repo", 1)

    def test_graphql_errors_raise(self):
        recorder = _Recorder(
            httpx.Response(200, json={"errors": [{"message": "Could not resolve"}]})
        )
        client = _make_client(recorder)

        with pytest.raises(GitHubAPIError, match="GraphQL error: Could not resolve"):
            client.graphql("query { viewer { login } }")

    def test_invalid_repository_name(self):
        with pytest.raises(GitHubAPIError, match="Invalid repository format"):
            split_repo("not-a-repo")


class TestIssueOperations:
    """Tests for issue create, update, search and close."""

    def test_create_issue(self):
        recorder = _Recorder(
            httpx.Response(
                201,
                json={
                    "id": 99,
                    "number": 7,
                    "html_url": "https://github.com/org/ios/issues/7",
                    "node_id": "I_7",
                },
            )
        )
        client = _make_client(recorder)

        result = client.create_issue("org/ios", "Title", "Body", ["ios"], ["octocat"])

        assert result.success is True
        assert result.issue_number == 7
        assert result.node_id == "I_7"
        sent = json.loads(recorder.requests[0].content)
        assert sent == {
            "title": "Title",
            "body": "Body",
            "labels": ["ios"],
            "assignees": ["octocat"],
        }

    def test_update_issue_merges_labels(self):
        recorder = _Recorder(
            httpx.Response(201, json={"id": 5}),
            httpx.Response(
                200,
                json={
                    "html_url": "https://github.com/org/ios/issues/7",
                    "labels": [{"name": "ios"}],
                },
            ),
            httpx.Response(200, json={}),
        )
        client = _make_client(recorder)

        result = client.update_issue("org/ios", 7, "comment", ["ios", "duplicate"])

        assert result.details == {"comment_id": 5, "labels_added": 1}
        patch = recorder.requests[2]
        assert patch.method == "PATCH"
        assert json.loads(patch.content) == {"labels": ["ios", "duplicate"]}

    def test_update_issue_skips_label_write_when_nothing_new(self):
        recorder = _Recorder(
            httpx.Response(201, json={"id": 5}),
            httpx.Response(200, json={"labels": ["ios"]}),
        )
        client = _make_client(recorder)

        result = client.update_issue("org/ios", 7, "comment", ["ios"])

        assert result.details["labels_added"] == 0
        assert len(recorder.requests) == 2

    def test_search_returns_newest_match(self):
        recorder = _Recorder(
            httpx.Response(
                200,
                json={
                    "total_count": 2,
                    "items": [
                        {"number": 9, "html_url": "https://github.com/org/ios/issues/9"},
                        {"number": 3, "html_url": "https://github.com/org/ios/issues/3"},
                    ],
                },
            )
        )
        client = _make_client(recorder)

        existing = client.search_for_duplicate_by_text("org/ios", "abc123")

        assert existing.number == 9
        assert existing.repo == "org/ios"
        assert recorder.requests[0].url.params["q"] == 'repo:org/ios "abc123" in:body'

    def test_search_without_results(self):
        client = _make_client(_Recorder(httpx.Response(200, json={"total_count": 0, "items": []})))

        assert client.search_for_duplicate_by_text("org/ios", "abc123") is None

    def test_search_failure_returns_none(self):
        client = _make_client(_Recorder(httpx.Response(422, text="Validation Failed")))

        assert client.search_for_duplicate_by_text("org/ios", "abc123") is None

    def test_list_labels(self):
        client = _make_client(
            _Recorder(httpx.Response(200, json=[{"name": "bug"}, {"name": "ios"}]))
        )

        assert client.list_labels("org/ios") == ["bug", "ios"]

    def test_list_labels_failure_returns_empty(self):
        client = _make_client(_Recorder(httpx.Response(404)))

        assert client.list_labels("org/ios") == []

    def test_close_and_link(self):
        recorder = _Recorder(
            httpx.Response(201, json={"id": 1}),
            httpx.Response(200, json={"closed_at": "2025-03-14T12:00:00Z"}),
        )
        client = _make_client(recorder)

        result = client.close_and_link("org/inbox", 12, "https://github.com/org/ios/issues/7")

        assert result.success is True
        comment, close = recorder.requests
        assert "https://github.com/org/ios/issues/7" in json.loads(comment.content)["body"]
        assert json.loads(close.content) == {"state": "closed", "labels": ["routed", "automated"]}

    def test_context_manager_closes_client(self):
        with _make_client(_Recorder(httpx.Response(200, json={}))) as client:
            client.get_issue("org/repo", 1)
            http_client = client.client

        assert http_client.is_closed


class TestFormatting:
    """Tests for routed issue bodies and comments."""

    def test_issue_body_carries_metadata(self):
        issue = _make_issue(slack_permalink="https://example.slack.com/archives/C1/p1")

        body = format_issue_body("Classified body", issue)

        assert body.startswith("<!-- Routing Metadata -->")
        assert "**Original Issue:** https://github.com/org/inbox/issues/12" in body
        assert "**Author:** @reporter" in body
        assert "**Created:** 2025-03-14T09:30:00+00:00" in body
        assert "**Slack Thread:** https://example.slack.com/archives/C1/p1" in body
        assert "**Content Hash:** `" in body
        assert body.endswith("---\nClassified body")

    def test_duplicate_comment(self):
        classification = ClassificationResult(
            repo="org/ios", title="t", confidence=0.9, reasoning="same widget bug"
        )

        comment = format_duplicate_comment(classification, _make_issue())

        assert comment.startswith("## 🔄 Duplicate Issue Update")
        assert "A similar issue was reported: https://github.com/org/inbox/issues/12" in comment
        assert "same widget bug" in comment
        assert "Slack Thread" not in comment

    def test_routed_comment(self):
        assert "routed to: https://x/1" in format_routed_comment("https://x/1")
