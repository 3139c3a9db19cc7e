"""Unit tests for the issue router.

All collaborators are mocks with explicit return values; each test
overrides only the behaviour it exercises.
"""

from types import SimpleNamespace
from typing import List, Optional
from unittest.mock import MagicMock

import pytest

from src.routing.classifier import ClassifierRun
from src.routing.config import parse_routing_config
from src.routing.dedup import DuplicateCheckResult, DuplicateReason, ProcessingOutcome
from src.routing.events import EventType
from src.routing.github import ExistingIssue, GitHubAPIError, GitHubOperationResult, ProjectInfo
from src.routing.models import (
    ROUTING_FAILED_LABEL,
    TRIAGE_LABEL,
    ClassificationResult,
    Issue,
    Priority,
)
from src.routing.orchestrator import ROUTING_FAILURE_REASONING, IssueRouter, merge_enhancement
from src.routing.priority import BatchCandidate, PriorityCategory, PriorityScore, ProcessingDecision
from src.routing.results import RoutingOutcome, RoutingStage
from src.routing.usage import DimensionUsage, PeriodUsage, UsageCheckResult, UsageSnapshot


SOURCE_URL = "https://github.com/org/inbox/issues/12"
CREATED_URL = "https://github.com/org/myprojects-ios/issues/7"
EXISTING_URL = "https://github.com/org/myprojects-ios/issues/3"


def _make_issue(title: str = "Widget does not refresh", **kwargs) -> Issue:
    kwargs.setdefault("body", "The home screen widget keeps showing yesterday.")
    kwargs.setdefault("number", 12)
    kwargs.setdefault("url", SOURCE_URL)
    kwargs.setdefault("author", "reporter")
    kwargs.setdefault("source_meta", {"repository": "org/inbox"})
    return Issue(title=title, **kwargs)


def _make_config(project: bool = False):
    defaults = {"repo": "org/inbox", "labels": ["triage"]}
    if project:
        defaults["project"] = {"org": "org", "number": 1}
    return parse_routing_config(
        {
            "defaults": defaults,
            "rules": [
                {
                    "name": "ios",
                    "when": {"keywords": ["MyProjects"]},
                    "route": {"repo": "org/myprojects-ios", "labels": ["ios"], "priority": "high"},
                },
            ],
        },
        env={},
    )


def _snapshot(daily: float = 0.1) -> UsageSnapshot:
    usage = PeriodUsage(
        calls=DimensionUsage(current=daily * 100, limit=100, percentage=daily),
        tokens=DimensionUsage(current=0, limit=500_000, percentage=0.0),
        cost=DimensionUsage(current=0, limit=50, percentage=0.0),
    )
    return UsageSnapshot(daily=usage, monthly=usage.model_copy())


def _usage_check(
    allowed: bool = True,
    reason: Optional[str] = None,
    warnings: Optional[List[str]] = None,
) -> UsageCheckResult:
    return UsageCheckResult(
        allowed=allowed,
        reason=reason,
        usage_snapshot=_snapshot(0.96 if not allowed else 0.1),
        warnings=warnings or [],
    )


def _priority(
    category: PriorityCategory = PriorityCategory.MEDIUM,
    decision: ProcessingDecision = ProcessingDecision.IMMEDIATE,
    reasoning: Optional[List[str]] = None,
) -> PriorityScore:
    return PriorityScore(
        overall=0.6,
        urgency=0.6,
        importance=0.6,
        business_impact=0.6,
        category=category,
        processing_decision=decision,
        reasoning=reasoning or ["Medium priority: standard issue with moderate impact"],
    )


def _classification(**kwargs) -> ClassificationResult:
    kwargs.setdefault("repo", "org/myprojects-ios")
    kwargs.setdefault("title", "Home screen widget does not refresh")
    kwargs.setdefault("body", "Widget shows stale data.")
    kwargs.setdefault("labels", ["widget"])
    kwargs.setdefault("priority", Priority.MEDIUM)
    kwargs.setdefault("confidence", 0.6)
    kwargs.setdefault("reasoning", "Widget code lives in the iOS app")
    return ClassificationResult(**kwargs)


def _classifier_run(result: Optional[ClassificationResult] = None, **kwargs) -> ClassifierRun:
    kwargs.setdefault("succeeded", True)
    kwargs.setdefault("api_called", True)
    kwargs.setdefault("input_tokens", 100)
    kwargs.setdefault("output_tokens", 50)
    return ClassifierRun(result=result or _classification(), **kwargs)


@pytest.fixture
def mocks() -> SimpleNamespace:
    classifier = MagicMock()
    classifier.estimate_request.return_value = (100, 50)
    classifier.classify.return_value = _classifier_run()
    classifier.fallback.side_effect = lambda issue: ClassificationResult.create_fallback(
        issue, default_repo="org/inbox", default_labels=["triage"]
    )

    duplicate_store = MagicMock()
    duplicate_store.check_duplicate.return_value = DuplicateCheckResult.not_duplicate()

    usage_meter = MagicMock()
    usage_meter.check_limits.return_value = _usage_check()

    priority_processor = MagicMock()
    priority_processor.analyze_priority.return_value = _priority()

    github = MagicMock()
    github.list_labels.return_value = []
    github.search_for_duplicate_by_text.return_value = None
    github.create_issue.return_value = GitHubOperationResult(
        success=True, issue_number=7, issue_url=CREATED_URL, node_id="I_7"
    )
    github.update_issue.return_value = GitHubOperationResult(
        success=True, issue_number=3, issue_url=EXISTING_URL, node_id="I_3"
    )

    return SimpleNamespace(
        classifier=classifier,
        duplicate_store=duplicate_store,
        usage_meter=usage_meter,
        priority_processor=priority_processor,
        github=github,
        projects=MagicMock(),
        emitter=MagicMock(),
    )


def _make_router(mocks, project: bool = False, dry_run: bool = False) -> IssueRouter:
    return IssueRouter(
        config=_make_config(project=project),
        classifier=mocks.classifier,
        duplicate_store=mocks.duplicate_store,
        usage_meter=mocks.usage_meter,
        priority_processor=mocks.priority_processor,
        github=mocks.github,
        projects=mocks.projects if project else None,
        event_emitter=mocks.emitter,
        dry_run=dry_run,
    )


def _events(mocks, event_type: EventType):
    return [
        call.args[0]
        for call in mocks.emitter.emit.call_args_list
        if call.args[0].event_type == event_type
    ]


class TestCreatePath:
    """Tests for issues routed to a new destination issue."""

    def test_classified_issue_is_created_and_source_closed(self, mocks):
        result = _make_router(mocks).route_issue(_make_issue())

        assert result.success is True
        assert result.outcome == RoutingOutcome.CREATED
        assert result.error is None
        assert result.stages == [
            RoutingStage.START,
            RoutingStage.RULE_MATCH,
            RoutingStage.ADMISSION_CHECK,
            RoutingStage.CLASSIFY,
            RoutingStage.DUPLICATE_CHECK,
            RoutingStage.GITHUB_OPERATION,
            RoutingStage.CLOSE_SOURCE,
            RoutingStage.DONE,
        ]
        repo, title, body, labels, assignees = mocks.github.create_issue.call_args[0]
        assert repo == "org/myprojects-ios"
        assert title == "Home screen widget does not refresh"
        assert body.startswith("<!-- Routing Metadata -->")
        assert body.endswith("Widget shows stale data.")
        mocks.github.close_and_link.assert_called_once_with("org/inbox", 12, CREATED_URL)

    def test_all_destinations_are_offered_to_the_classifier(self, mocks):
        _make_router(mocks).route_issue(_make_issue())

        destinations = mocks.classifier.classify.call_args[0][1]
        assert destinations == ["org/inbox", "org/myprojects-ios"]
        mocks.github.list_labels.assert_any_call("org/myprojects-ios")

    def test_usage_and_ledger_are_recorded(self, mocks):
        issue = _make_issue()

        _make_router(mocks).route_issue(issue)

        mocks.usage_meter.record_usage.assert_called_once_with(100, 50)
        args, kwargs = mocks.duplicate_store.record_processing.call_args
        assert args[0] == issue
        assert args[2] == 1
        assert args[3] == ProcessingOutcome.SUCCESS
        assert kwargs == {"destination_number": 7, "destination_url": CREATED_URL}

    def test_usage_warnings_are_reported(self, mocks):
        mocks.usage_meter.check_limits.return_value = _usage_check(
            warnings=["Daily API calls at 85% (84/100)"]
        )

        result = _make_router(mocks).route_issue(_make_issue())

        assert result.warnings == ["Daily API calls at 85% (84/100)"]

    def test_failed_classifier_call_is_still_billed(self, mocks):
        fallback = ClassificationResult.create_fallback(_make_issue(), "org/inbox", ["triage"])
        mocks.classifier.classify.return_value = _classifier_run(
            fallback, succeeded=False, error="Invalid JSON response"
        )

        result = _make_router(mocks).route_issue(_make_issue())

        assert result.success is True
        assert result.classification.repo == "org/inbox"
        mocks.usage_meter.record_usage.assert_called_once()

    def test_source_issue_not_closed_when_it_is_the_destination(self, mocks):
        mocks.github.create_issue.return_value = GitHubOperationResult(
            success=True, issue_number=12, issue_url=SOURCE_URL
        )

        _make_router(mocks).route_issue(_make_issue())

        mocks.github.close_and_link.assert_not_called()

    def test_issue_without_source_repo_is_not_closed(self, mocks):
        result = _make_router(mocks).route_issue(_make_issue(source_meta={}))

        assert RoutingStage.CLOSE_SOURCE not in result.stages
        mocks.github.close_and_link.assert_not_called()

    def test_routed_event_is_emitted(self, mocks):
        _make_router(mocks).route_issue(_make_issue())

        routed = _events(mocks, EventType.ROUTED)
        assert len(routed) == 1
        assert routed[0].issue_id == "org/inbox-12"
        assert routed[0].repository == "org/myprojects-ios"
        assert routed[0].details["outcome"] == "created"
        assert routed[0].details["issue_url"] == CREATED_URL


class TestRuleMatchedIssues:
    """Tests for rule matches and their LLM enhancement."""

    def test_rule_match_is_enhanced_by_classifier(self, mocks):
        result = _make_router(mocks).route_issue(_make_issue("MyProjects widget stalls"))

        destinations = mocks.classifier.classify.call_args[0][1]
        assert destinations == ["org/myprojects-ios"]
        classification = result.classification
        assert classification.repo == "org/myprojects-ios"
        assert classification.labels == ["ios", "widget"]
        assert classification.confidence == pytest.approx(0.8)
        assert "| LLM enhancement: Widget code lives in the iOS app" in classification.reasoning

    def test_enhancement_keeps_rule_priority(self, mocks):
        mocks.classifier.classify.return_value = _classifier_run(
            _classification(priority=Priority.LOW)
        )

        result = _make_router(mocks).route_issue(_make_issue("MyProjects widget stalls"))

        assert result.classification.priority == Priority.HIGH

    def test_rule_match_proceeds_without_llm_when_usage_refused(self, mocks):
        mocks.usage_meter.check_limits.return_value = _usage_check(
            allowed=False, reason="Daily API call limit exceeded (96% of 100)"
        )

        result = _make_router(mocks).route_issue(_make_issue("MyProjects widget stalls"))

        assert result.outcome == RoutingOutcome.CREATED
        assert result.classification.confidence == 0.95
        assert result.classification.priority == Priority.HIGH
        mocks.classifier.classify.assert_not_called()

    def test_failed_enhancement_keeps_rule_result(self, mocks):
        mocks.classifier.classify.return_value = _classifier_run(
            _classification(repo="org/inbox"), succeeded=False, error="timed out"
        )

        result = _make_router(mocks).route_issue(_make_issue("MyProjects widget stalls"))

        assert result.classification.repo == "org/myprojects-ios"
        assert result.classification.confidence == 0.95

    def test_queue_decisions_do_not_hold_back_rule_matches(self, mocks):
        mocks.priority_processor.analyze_priority.return_value = _priority(
            decision=ProcessingDecision.DEFERRED
        )

        result = _make_router(mocks).route_issue(_make_issue("MyProjects widget stalls"))

        assert result.outcome == RoutingOutcome.CREATED
        mocks.priority_processor.queue_issue.assert_not_called()
        mocks.classifier.classify.assert_not_called()


class TestAdmission:
    """Tests for queued, blocked and emergency issues."""

    def test_batch_decision_queues_issue(self, mocks):
        priority = _priority(decision=ProcessingDecision.BATCH)
        mocks.priority_processor.analyze_priority.return_value = priority
        issue = _make_issue()

        result = _make_router(mocks).route_issue(issue)

        assert result.success is False
        assert result.outcome == RoutingOutcome.BATCHED
        assert result.error is None
        assert result.stages[-2:] == [RoutingStage.ADMISSION_CHECK, RoutingStage.DONE]
        mocks.priority_processor.queue_issue.assert_called_once_with(issue, priority, "org/inbox")
        mocks.classifier.classify.assert_not_called()
        mocks.duplicate_store.record_processing.assert_not_called()
        assert len(_events(mocks, EventType.QUEUED)) == 1

    def test_deferred_decision(self, mocks):
        mocks.priority_processor.analyze_priority.return_value = _priority(
            category=PriorityCategory.LOW, decision=ProcessingDecision.DEFERRED
        )

        result = _make_router(mocks).route_issue(_make_issue())

        assert result.outcome == RoutingOutcome.DEFERRED

    def test_bypass_queue_processes_immediately(self, mocks):
        mocks.priority_processor.analyze_priority.return_value = _priority(
            decision=ProcessingDecision.BATCH
        )

        result = _make_router(mocks).route_issue(_make_issue(), bypass_queue=True)

        assert result.outcome == RoutingOutcome.CREATED
        mocks.priority_processor.queue_issue.assert_not_called()

    def test_blocked_decision(self, mocks):
        mocks.priority_processor.analyze_priority.return_value = _priority(
            category=PriorityCategory.LOW,
            decision=ProcessingDecision.BLOCKED,
            reasoning=["Low priority: enhancement or minor issue",
                       "API usage at 96% - emergency issues only"],
        )

        result = _make_router(mocks).route_issue(_make_issue())

        assert result.success is False
        assert result.outcome == RoutingOutcome.BLOCKED
        assert result.error is None
        assert any("API usage at 96% - emergency issues only" in line for line in result.logs)
        blocked = _events(mocks, EventType.BLOCKED)
        assert blocked[0].details["reason"] == "API usage at 96% - emergency issues only"
        mocks.github.create_issue.assert_not_called()
        mocks.duplicate_store.record_processing.assert_not_called()

    def test_refused_usage_blocks_non_emergency(self, mocks):
        mocks.usage_meter.check_limits.return_value = _usage_check(
            allowed=False, reason="Monthly API call limit exceeded (91% of 2000)"
        )

        result = _make_router(mocks).route_issue(_make_issue())

        assert result.outcome == RoutingOutcome.BLOCKED
        assert any("Monthly API call limit exceeded" in line for line in result.logs)
        mocks.classifier.classify.assert_not_called()

    def test_refused_usage_routes_emergency_with_fallback(self, mocks):
        mocks.usage_meter.check_limits.return_value = _usage_check(
            allowed=False, reason="Daily API call limit exceeded (96% of 100)"
        )
        mocks.priority_processor.analyze_priority.return_value = _priority(
            category=PriorityCategory.EMERGENCY
        )

        result = _make_router(mocks).route_issue(_make_issue("Production down for all accounts"))

        assert result.success is True
        assert result.outcome == RoutingOutcome.CREATED
        assert result.classification.repo == "org/inbox"
        assert TRIAGE_LABEL in result.classification.labels
        mocks.classifier.classify.assert_not_called()
        mocks.usage_meter.record_usage.assert_not_called()
        assert mocks.github.create_issue.call_args[0][0] == "org/inbox"

    def test_admission_decision_is_attached_to_classify_transition(self, mocks):
        _make_router(mocks).route_issue(_make_issue())

        transitions = _events(mocks, EventType.STAGE_TRANSITION)
        to_classify = [e for e in transitions if e.details["to_stage"] == "classify"]
        assert to_classify[0].details["from_stage"] == "admission_check"
        assert to_classify[0].details["decision"] == "immediate"


class TestDuplicates:
    """Tests for duplicate handling."""

    def test_ledger_duplicate_updates_existing_issue(self, mocks):
        mocks.duplicate_store.check_duplicate.return_value = DuplicateCheckResult(
            is_duplicate=True,
            reason=DuplicateReason.EXACT_CONTENT_MATCH.value,
            existing_repo="org/myprojects-ios",
            existing_number=3,
            existing_url=EXISTING_URL,
        )

        result = _make_router(mocks).route_issue(_make_issue())

        assert result.success is True
        assert result.outcome == RoutingOutcome.UPDATED
        repo, number, comment, labels = mocks.github.update_issue.call_args[0]
        assert (repo, number) == ("org/myprojects-ios", 3)
        assert comment.startswith("## 🔄 Duplicate Issue Update")
        assert labels == ["widget"]
        mocks.github.create_issue.assert_not_called()
        mocks.github.search_for_duplicate_by_text.assert_not_called()
        kwargs = mocks.duplicate_store.record_processing.call_args[1]
        assert kwargs["destination_number"] == 3

    def test_duplicate_without_destination_is_skipped(self, mocks):
        mocks.duplicate_store.check_duplicate.return_value = DuplicateCheckResult(
            is_duplicate=True, reason=DuplicateReason.IDENTICAL_CONTENT.value
        )

        result = _make_router(mocks).route_issue(_make_issue())

        assert result.success is True
        assert result.outcome == RoutingOutcome.DUPLICATE_SKIPPED
        assert result.stages[-2:] == [RoutingStage.DUPLICATE_CHECK, RoutingStage.DONE]
        mocks.github.create_issue.assert_not_called()
        mocks.github.update_issue.assert_not_called()
        mocks.duplicate_store.record_processing.assert_not_called()
        assert len(_events(mocks, EventType.DUPLICATE)) == 1

    def test_ledger_duplicate_gains_destination_from_search(self, mocks):
        mocks.duplicate_store.check_duplicate.return_value = DuplicateCheckResult(
            is_duplicate=True, reason="edited-within-24h"
        )
        mocks.github.search_for_duplicate_by_text.return_value = ExistingIssue(
            repo="org/myprojects-ios", number=3, url=EXISTING_URL
        )

        result = _make_router(mocks).route_issue(_make_issue())

        assert result.outcome == RoutingOutcome.UPDATED
        assert result.duplicate_check.reason == "edited-within-24h"
        assert result.duplicate_check.existing_number == 3

    def test_remote_search_finds_earlier_copy(self, mocks):
        mocks.github.search_for_duplicate_by_text.return_value = ExistingIssue(
            repo="org/myprojects-ios", number=3, url=EXISTING_URL
        )

        result = _make_router(mocks).route_issue(_make_issue())

        assert result.outcome == RoutingOutcome.UPDATED
        assert result.duplicate_check.reason == DuplicateReason.REMOTE_MATCH.value

    def test_search_tries_permalink_then_content_hash(self, mocks):
        permalink = "https://example.slack.com/archives/C1/p1"

        _make_router(mocks).route_issue(_make_issue(slack_permalink=permalink))

        queries = [call.args[1] for call in mocks.github.search_for_duplicate_by_text.call_args_list]
        assert queries[0] == permalink
        assert len(queries[1]) == 16

    def test_significant_edit_skips_search(self, mocks):
        mocks.duplicate_store.check_duplicate.return_value = DuplicateCheckResult.not_duplicate(
            DuplicateReason.SIGNIFICANT_EDIT.value, edit_distance=0.4
        )

        result = _make_router(mocks).route_issue(_make_issue())

        assert result.outcome == RoutingOutcome.CREATED
        mocks.github.search_for_duplicate_by_text.assert_not_called()

    def test_duplicate_check_targets_classified_destination(self, mocks):
        issue = _make_issue()

        _make_router(mocks).route_issue(issue)

        mocks.duplicate_store.check_duplicate.assert_called_once_with(issue, "org/myprojects-ios")


class TestFailures:
    """Tests for failed attempts."""

    def test_destination_error_fails_but_keeps_classification(self, mocks):
        mocks.github.create_issue.side_effect = GitHubAPIError(
            "GitHub API error: 500",
            status_code=500,
            request_url="https://api.github.com/repos/org/myprojects-ios/issues",
        )

        result = _make_router(mocks).route_issue(_make_issue())

        assert result.success is False
        assert result.outcome == RoutingOutcome.FAILED
        assert result.error == "GitHub API error: 500"
        assert result.classification.repo == "org/myprojects-ios"
        assert ROUTING_FAILED_LABEL not in result.classification.labels
        assert result.duplicate_check is not None
        assert result.github_operation.success is False
        assert result.github_operation.details["status_code"] == 500
        assert result.stages[-2:] == [RoutingStage.GITHUB_OPERATION, RoutingStage.FAILED]
        assert mocks.duplicate_store.record_processing.call_args[0][3] == ProcessingOutcome.FAILED
        errors = _events(mocks, EventType.ERROR)
        assert errors[0].details["stage"] == "github_operation"

    def test_unexpected_error_uses_routing_failed_fallback(self, mocks):
        mocks.duplicate_store.check_duplicate.side_effect = RuntimeError("disk gone")

        result = _make_router(mocks).route_issue(_make_issue())

        assert result.success is False
        assert result.outcome == RoutingOutcome.FAILED
        assert result.error == "disk gone"
        classification = result.classification
        assert classification.repo == "org/inbox"
        assert ROUTING_FAILED_LABEL in classification.labels
        assert classification.confidence == 0.0
        assert classification.reasoning == ROUTING_FAILURE_REASONING
        assert result.stages[-1] == RoutingStage.FAILED
        assert mocks.duplicate_store.record_processing.call_args[0][3] == ProcessingOutcome.FAILED

    def test_failure_recording_error_is_contained(self, mocks):
        mocks.github.create_issue.side_effect = GitHubAPIError("GitHub API error: 502")
        mocks.duplicate_store.record_processing.side_effect = OSError("read-only")

        result = _make_router(mocks).route_issue(_make_issue())

        assert result.outcome == RoutingOutcome.FAILED

    def test_project_placement_failure_is_not_fatal(self, mocks):
        mocks.projects.get_board.side_effect = GitHubAPIError("GraphQL error: forbidden")

        result = _make_router(mocks, project=True).route_issue(_make_issue())

        assert result.success is True
        assert result.outcome == RoutingOutcome.CREATED
        assert any("Project placement failed" in line for line in result.logs)

    def test_close_failure_is_not_fatal(self, mocks):
        mocks.github.close_and_link.side_effect = GitHubAPIError("GitHub API error: 403")

        result = _make_router(mocks).route_issue(_make_issue())

        assert result.success is True
        assert any("Failed to close source issue" in line for line in result.logs)

    def test_emitter_failure_does_not_disturb_routing(self, mocks):
        mocks.emitter.emit.side_effect = RuntimeError("sink down")

        result = _make_router(mocks).route_issue(_make_issue())

        assert result.outcome == RoutingOutcome.CREATED


class TestProjectPlacement:
    """Tests for placing routed issues on the project board."""

    def test_issue_is_placed_on_board(self, mocks):
        board = ProjectInfo(id="PVT_1", title="Roadmap")
        mocks.projects.get_board.return_value = board
        mocks.projects.place_issue.return_value = "ITEM_1"

        result = _make_router(mocks, project=True).route_issue(_make_issue())

        assert RoutingStage.PROJECT_PLACEMENT in result.stages
        assert result.github_operation.project_item_id == "ITEM_1"
        mocks.projects.get_board.assert_called_once_with("org", 1)
        node_id = mocks.projects.place_issue.call_args[0][1]
        assert node_id == "I_7"

    def test_board_is_fetched_once(self, mocks):
        mocks.projects.get_board.return_value = ProjectInfo(id="PVT_1")
        mocks.projects.place_issue.return_value = "ITEM_1"
        router = _make_router(mocks, project=True)

        router.route_issue(_make_issue(number=1))
        router.route_issue(_make_issue(number=2))

        assert mocks.projects.get_board.call_count == 1

    def test_node_id_is_resolved_when_missing(self, mocks):
        mocks.github.create_issue.return_value = GitHubOperationResult(
            success=True, issue_number=7, issue_url=CREATED_URL
        )
        mocks.projects.get_board.return_value = ProjectInfo(id="PVT_1")
        mocks.projects.get_issue_node_id.return_value = "I_resolved"

        _make_router(mocks, project=True).route_issue(_make_issue())

        mocks.projects.get_issue_node_id.assert_called_once_with("org/myprojects-ios", 7)
        assert mocks.projects.place_issue.call_args[0][1] == "I_resolved"


class TestDryRun:
    """Tests for dry runs."""

    def test_dry_run_writes_nothing(self, mocks):
        result = _make_router(mocks, dry_run=True).route_issue(_make_issue())

        assert result.success is True
        assert result.dry_run is True
        assert result.outcome == RoutingOutcome.CREATED
        assert result.github_operation.details == {"dry_run": True}
        assert result.stages[-2:] == [RoutingStage.GITHUB_OPERATION, RoutingStage.DONE]
        mocks.github.create_issue.assert_not_called()
        mocks.github.close_and_link.assert_not_called()
        mocks.usage_meter.record_usage.assert_not_called()
        mocks.duplicate_store.record_processing.assert_not_called()

    def test_dry_run_failure_records_nothing(self, mocks):
        mocks.duplicate_store.check_duplicate.side_effect = RuntimeError("disk gone")

        result = _make_router(mocks, dry_run=True).route_issue(_make_issue())

        assert result.outcome == RoutingOutcome.FAILED
        mocks.duplicate_store.record_processing.assert_not_called()


class TestQueues:
    """Tests for draining the batch and deferral queues."""

    def test_process_batch_routes_released_candidates(self, mocks):
        issue = _make_issue()
        mocks.priority_processor.get_next_batch.return_value = [
            BatchCandidate(
                issue=issue,
                priority=_priority(decision=ProcessingDecision.BATCH),
                added_at=issue.created_at,
                source_repo="org/inbox",
            )
        ]
        mocks.priority_processor.analyze_priority.return_value = _priority(
            decision=ProcessingDecision.BATCH
        )

        results = _make_router(mocks).process_batch(max_batch_size=3)

        assert [r.outcome for r in results] == [RoutingOutcome.CREATED]
        mocks.priority_processor.get_next_batch.assert_called_once_with(3)

    def test_process_deferred_uses_current_usage(self, mocks):
        snapshot = _snapshot(0.2)
        mocks.usage_meter.current_usage.return_value = snapshot
        mocks.priority_processor.process_deferred_queue.return_value = []

        assert _make_router(mocks).process_deferred() == []
        mocks.priority_processor.process_deferred_queue.assert_called_once_with(snapshot)


class TestMergeEnhancement:
    """Tests for combining rule and LLM classifications."""

    def test_merge(self):
        rule = ClassificationResult(
            repo="org/myprojects-ios",
            title="Crash",
            body="short",
            labels=["ios"],
            assignees=[],
            priority=Priority.HIGH,
            confidence=0.95,
            reasoning="Matched routing rule",
            project_fields={"Component": "iOS"},
        )
        enhanced = ClassificationResult(
            repo="org/elsewhere",
            title="App crashes on launch after update",
            body="longer body text",
            labels=["bug", "ios"],
            assignees=["octocat"],
            priority=Priority.CRITICAL,
            confidence=1.0,
            reasoning="launch crash",
            project_fields={"Component": "Other", "Size": "Small"},
        )

        merged = merge_enhancement(rule, enhanced)

        assert merged.repo == "org/myprojects-ios"
        assert merged.title == "App crashes on launch after update"
        assert merged.body == "longer body text"
        assert merged.labels == ["ios", "bug"]
        assert merged.assignees == ["octocat"]
        assert merged.priority == Priority.HIGH
        assert merged.confidence == pytest.approx(0.975)
        assert merged.reasoning == "Matched routing rule | LLM enhancement: launch crash"
        assert merged.project_fields == {"Component": "iOS", "Size": "Small"}
