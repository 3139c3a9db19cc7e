"""Issue router connecting all routing components.

Drives one issue through the full routing flow:
rule match → admission check → classification → duplicate check →
destination write → project placement → closing the source issue.

Each stage is a separate method. Classification and admission problems
are recovered locally (fallback classification, queued or blocked
outcomes); destination API errors fail the attempt but keep the
classification and duplicate outcome in the result; anything unexpected
produces a fallback classification tagged ``routing-failed``.
``route_issue`` never raises.

The duplicate ledger is written last, once per concluded attempt. Usage is
recorded as soon as the classifier reply arrives.

Source:
- src/routing/rules/matcher.py (match)
- src/routing/usage/meter.py (UsageMeter)
- src/routing/priority/processor.py (PriorityProcessor)
- src/routing/classifier/agent.py (IssueClassifier)
- src/routing/dedup/store.py (DuplicateStore)
- src/routing/github/client.py (GitHubClient)
- src/routing/github/projects.py (ProjectsClient)
- src/routing/events/emitter.py (EventEmitter)
"""

import logging
import time
from typing import Dict, List, Optional, Sequence

from src.routing.classifier.agent import ClassifierRun, IssueClassifier
from src.routing.config import RoutingConfig
from src.routing.dedup.hashing import compute_issue_key, short_content_hash
from src.routing.dedup.models import DuplicateCheckResult, DuplicateReason, ProcessingOutcome
from src.routing.dedup.store import DuplicateStore
from src.routing.events.emitter import EventEmitter, NullEventEmitter
from src.routing.events.models import EventType, RoutingEvent
from src.routing.github.client import GitHubAPIError, GitHubClient
from src.routing.github.formatting import format_duplicate_comment, format_issue_body
from src.routing.github.models import ExistingIssue, GitHubOperationResult, ProjectInfo
from src.routing.github.projects import ProjectsClient
from src.routing.models import ROUTING_FAILED_LABEL, ClassificationResult, Issue
from src.routing.priority.models import (
    BatchCandidate,
    PriorityCategory,
    ProcessingDecision,
)
from src.routing.priority.processor import PriorityProcessor
from src.routing.results import (
    RoutingOutcome,
    RoutingResult,
    RoutingStage,
    RoutingTrace,
)
from src.routing.rules.matcher import match
from src.routing.usage.meter import UsageMeter


logger = logging.getLogger(__name__)


ROUTING_FAILURE_REASONING = "Fallback classification due to routing failure"

# Floor for the confidence of a rule result refined by the classifier
ENHANCED_MIN_CONFIDENCE = 0.8

QUEUED_OUTCOMES = {
    ProcessingDecision.BATCH: RoutingOutcome.BATCHED,
    ProcessingDecision.DEFERRED: RoutingOutcome.DEFERRED,
}


def merge_enhancement(
    rule_result: ClassificationResult,
    enhanced: ClassificationResult,
) -> ClassificationResult:
    """Combine a rule classification with the classifier's refinement.

    The rule keeps the destination, the priority and, when it names any,
    the assignees.
    The longer title and body win, labels are unioned and project fields
    from the rule override the classifier's.

    Args:
        rule_result: Classification produced by the matching rule.
        enhanced: Classification the LLM produced for the rule's destination.

    Returns:
        The merged classification.
    """
    return ClassificationResult(
        repo=rule_result.repo,
        title=max(rule_result.title, enhanced.title, key=len),
        body=max(rule_result.body, enhanced.body, key=len),
        labels=rule_result.labels + enhanced.labels,
        assignees=rule_result.assignees or enhanced.assignees,
        priority=rule_result.priority,
        confidence=max(
            ENHANCED_MIN_CONFIDENCE,
            (rule_result.confidence + enhanced.confidence) / 2,
        ),
        reasoning=f"{rule_result.reasoning} | LLM enhancement: {enhanced.reasoning}",
        project_fields={**enhanced.project_fields, **rule_result.project_fields},
    )


class _RoutingRun:
    """Mutable state of one routing attempt."""

    def __init__(self, issue: Issue, source_repo: Optional[str], default_repo: str):
        self.issue = issue
        self.issue_key = compute_issue_key(issue)
        self.source_repo = source_repo
        self.default_repo = default_repo
        self.trace = RoutingTrace()
        self.started = time.monotonic()
        self.warnings: List[str] = []
        self.priority = None
        self.classification: Optional[ClassificationResult] = None
        self.duplicate_check: Optional[DuplicateCheckResult] = None
        self.github_operation: Optional[GitHubOperationResult] = None
        self.api_calls = 0

    @property
    def repository(self) -> str:
        """Destination when known, else where the issue came from."""
        if self.classification is not None:
            return self.classification.repo
        return self.source_repo or self.default_repo

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started


class IssueRouter:
    """Routes inbound issues to their destination repositories.

    Accepts all collaborators via constructor injection. Shared state (the
    ledgers and the queues) lives in the collaborators, which guard it
    themselves, so one router may serve concurrent invocations.

    Attributes:
        config: Routing configuration.
        classifier: LLM-based issue classifier.
        duplicate_store: Ledger of processed issues.
        usage_meter: Classifier API budget tracker.
        priority_processor: Priority scoring and queues.
        github: Destination repository client.
        projects: Project board client (optional).
        event_emitter: Emits routing events for observability.
        dry_run: Suppress destination writes and ledger records.
    """

    def __init__(
        self,
        config: RoutingConfig,
        classifier: IssueClassifier,
        duplicate_store: DuplicateStore,
        usage_meter: UsageMeter,
        priority_processor: PriorityProcessor,
        github: GitHubClient,
        projects: Optional[ProjectsClient] = None,
        event_emitter: Optional[EventEmitter] = None,
        dry_run: bool = False,
    ):
        self.config = config
        self.classifier = classifier
        self.duplicate_store = duplicate_store
        self.usage_meter = usage_meter
        self.priority_processor = priority_processor
        self.github = github
        self.projects = projects
        self.event_emitter = event_emitter or NullEventEmitter()
        self.dry_run = dry_run
        self._board: Optional[ProjectInfo] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def route_issue(
        self,
        issue: Issue,
        source_repo: Optional[str] = None,
        bypass_queue: bool = False,
    ) -> RoutingResult:
        """Route one issue end to end.

        Args:
            issue: The issue to route.
            source_repo: Repository the issue was reported in. Defaults to
                the issue's own source metadata. When set together with the
                issue number, the source issue is closed after routing.
            bypass_queue: Process batch or deferred decisions immediately.
                Used when draining the queues.

        Returns:
            RoutingResult describing the attempt. Never raises.
        """
        run = _RoutingRun(issue, source_repo or issue.source_repository, self.config.defaults.repo)
        run.trace.log(f"Routing issue: {issue.title}")
        logger.info(
            "Routing issue",
            extra={
                "issue_id": run.issue_key,
                "title": issue.title[:100],
                "dry_run": self.dry_run,
            },
        )

        try:
            return self._route(run, bypass_queue)
        except Exception as exc:
            return self._fail(run, exc)

    def process_batch(self, max_batch_size: Optional[int] = None) -> List[RoutingResult]:
        """Route the batch-queued issues that are ready.

        Returns:
            One RoutingResult per released issue.
        """
        candidates = self.priority_processor.get_next_batch(max_batch_size)
        return self._route_candidates(candidates, "batch")

    def process_deferred(self) -> List[RoutingResult]:
        """Route deferred issues if usage has dropped below the deferral threshold.

        Returns:
            One RoutingResult per released issue.
        """
        snapshot = self.usage_meter.current_usage()
        candidates = self.priority_processor.process_deferred_queue(snapshot)
        return self._route_candidates(candidates, "deferred")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _route(self, run: _RoutingRun, bypass_queue: bool) -> RoutingResult:
        issue = run.issue

        self._transition(run, RoutingStage.RULE_MATCH)
        rule_result = match(issue, self.config.rules)
        if rule_result is not None:
            run.trace.log(f"Rule matched: routing to {rule_result.repo}")
        else:
            run.trace.log("No rule matched")

        self._transition(run, RoutingStage.ADMISSION_CHECK)
        destinations = [rule_result.repo] if rule_result else self.config.destinations()
        input_tokens, output_tokens = self.classifier.estimate_request(issue, destinations)
        usage_check = self.usage_meter.check_limits(input_tokens, output_tokens)
        run.warnings.extend(usage_check.warnings)

        priority = self.priority_processor.analyze_priority(issue, usage_check.usage_snapshot)
        run.priority = priority
        decision = priority.processing_decision
        if bypass_queue and decision in QUEUED_OUTCOMES:
            decision = ProcessingDecision.IMMEDIATE
        run.trace.log(
            f"Priority {priority.category.value} ({priority.overall:.2f}), "
            f"decision {decision.value}"
        )

        # Rule matches always proceed; only the LLM refinement is gated
        if rule_result is None:
            if decision in QUEUED_OUTCOMES:
                return self._queue(run, decision)
            if decision == ProcessingDecision.BLOCKED:
                return self._block(run, priority.reasoning[-1])
            if not usage_check.allowed and priority.category != PriorityCategory.EMERGENCY:
                return self._block(run, usage_check.reason or "Usage limit reached")

        call_llm = usage_check.allowed and decision == ProcessingDecision.IMMEDIATE
        if not usage_check.allowed:
            run.trace.log(f"Classifier call refused: {usage_check.reason}")

        self._transition(run, RoutingStage.CLASSIFY, decision=decision.value)
        if rule_result is not None:
            run.classification = self._enhance(run, rule_result, call_llm)
        else:
            run.classification = self._classify(run, destinations, call_llm)

        self._transition(run, RoutingStage.DUPLICATE_CHECK)
        run.duplicate_check = self._check_duplicates(run)
        if run.duplicate_check.is_duplicate and not run.duplicate_check.has_destination:
            run.trace.log("Duplicate of earlier work with no destination issue to update, skipping")
            self._transition(run, RoutingStage.DONE)
            return self._finish(run, RoutingOutcome.DUPLICATE_SKIPPED)

        self._transition(run, RoutingStage.GITHUB_OPERATION)
        try:
            run.github_operation = self._write_destination(run)
        except GitHubAPIError as exc:
            return self._fail_destination(run, exc)

        outcome = (
            RoutingOutcome.UPDATED
            if run.duplicate_check.is_duplicate
            else RoutingOutcome.CREATED
        )
        if self.dry_run:
            self._transition(run, RoutingStage.DONE)
            return self._finish(run, outcome)

        if self.projects is not None and self.config.defaults.project is not None:
            self._transition(run, RoutingStage.PROJECT_PLACEMENT)
            self._place_on_board(run)

        if self._should_close_source(run):
            self._transition(run, RoutingStage.CLOSE_SOURCE)
            self._close_source(run)

        self.duplicate_store.record_processing(
            issue,
            run.classification,
            run.api_calls,
            ProcessingOutcome.SUCCESS,
            destination_number=run.github_operation.issue_number,
            destination_url=run.github_operation.issue_url,
        )
        self._transition(run, RoutingStage.DONE)
        return self._finish(run, outcome)

    def _enhance(
        self,
        run: _RoutingRun,
        rule_result: ClassificationResult,
        call_llm: bool,
    ) -> ClassificationResult:
        """Refine a rule classification with the classifier when allowed."""
        if not call_llm:
            run.trace.log("Using rule classification without LLM enhancement")
            return rule_result

        repo = rule_result.repo
        classifier_run = self.classifier.classify(
            run.issue,
            [repo],
            self._labels_by_destination([repo]),
            f"Rule-matched repository: {repo}",
        )
        self._account(run, classifier_run)

        if not classifier_run.succeeded:
            run.trace.log(f"LLM enhancement failed, using rule result: {classifier_run.error}")
            return rule_result

        run.trace.log("Rule classification enhanced by LLM")
        return merge_enhancement(rule_result, classifier_run.result)

    def _classify(
        self,
        run: _RoutingRun,
        destinations: Sequence[str],
        call_llm: bool,
    ) -> ClassificationResult:
        """Classify an issue no rule matched."""
        if not call_llm:
            run.trace.log("Emergency issue routed with fallback classification")
            return self.classifier.fallback(run.issue)

        classifier_run = self.classifier.classify(
            run.issue,
            destinations,
            self._labels_by_destination(destinations),
            self._organization_context(destinations),
        )
        self._account(run, classifier_run)

        if classifier_run.succeeded:
            run.trace.log(
                f"Classified to {classifier_run.result.repo} "
                f"(confidence {classifier_run.result.confidence:.2f})"
            )
        else:
            run.trace.log(f"Classifier failed, using fallback: {classifier_run.error}")
        return classifier_run.result

    def _check_duplicates(self, run: _RoutingRun) -> DuplicateCheckResult:
        """Check the ledger, then the destination itself."""
        destination = run.classification.repo
        result = self.duplicate_store.check_duplicate(run.issue, destination)
        if result.is_duplicate:
            run.trace.log(f"Duplicate detected: {result.reason}")
            if result.has_destination:
                return result
        elif result.reason != DuplicateReason.NO_DUPLICATE.value:
            run.trace.log(f"Not a duplicate: {result.reason}")
            return result

        existing = self._search_destination(run.issue, destination)
        if existing is None:
            return result

        run.trace.log(f"Found existing issue #{existing.number} at {existing.repo}")
        if result.is_duplicate:
            return result.model_copy(
                update={
                    "existing_repo": existing.repo,
                    "existing_number": existing.number,
                    "existing_url": existing.url,
                }
            )
        return DuplicateCheckResult(
            is_duplicate=True,
            reason=DuplicateReason.REMOTE_MATCH.value,
            existing_repo=existing.repo,
            existing_number=existing.number,
            existing_url=existing.url,
        )

    def _search_destination(self, issue: Issue, repo: str) -> Optional[ExistingIssue]:
        """Look for an earlier routed copy of the issue at its destination."""
        queries = []
        if issue.slack_permalink:
            queries.append(issue.slack_permalink)
        queries.append(short_content_hash(issue))
        for query in queries:
            existing = self.github.search_for_duplicate_by_text(repo, query)
            if existing is not None:
                return existing
        return None

    def _write_destination(self, run: _RoutingRun) -> GitHubOperationResult:
        """Create a new issue or update the existing duplicate.

        Raises:
            GitHubAPIError: If the destination write fails.
        """
        classification = run.classification
        duplicate = run.duplicate_check

        if self.dry_run:
            run.trace.log("Dry run: skipping destination write")
            return GitHubOperationResult(
                success=True,
                issue_number=duplicate.existing_number if duplicate.is_duplicate else None,
                issue_url=duplicate.existing_url if duplicate.is_duplicate else None,
                details={"dry_run": True},
            )

        if duplicate.is_duplicate:
            operation = self.github.update_issue(
                duplicate.existing_repo,
                duplicate.existing_number,
                format_duplicate_comment(classification, run.issue),
                classification.labels,
            )
            run.trace.log(f"Updated existing issue: {operation.issue_url}")
            return operation

        operation = self.github.create_issue(
            classification.repo,
            classification.title,
            format_issue_body(classification.body, run.issue),
            classification.labels,
            classification.assignees,
        )
        run.trace.log(f"Created issue: {operation.issue_url}")
        return operation

    def _place_on_board(self, run: _RoutingRun) -> None:
        """Add the routed issue to the project board. Failures are logged only."""
        operation = run.github_operation
        project = self.config.defaults.project
        try:
            if self._board is None:
                self._board = self.projects.get_board(project.org, project.number)
            if self._board is None:
                run.trace.log(f"Project board {project.org}#{project.number} not found")
                return

            node_id = operation.node_id
            if not node_id and operation.issue_number:
                node_id = self.projects.get_issue_node_id(
                    run.classification.repo
                    if not run.duplicate_check.is_duplicate
                    else run.duplicate_check.existing_repo,
                    operation.issue_number,
                )
            if not node_id:
                run.trace.log("Issue node ID unavailable, skipping project placement")
                return

            item_id = self.projects.place_issue(self._board, node_id, run.classification)
        except GitHubAPIError as exc:
            logger.warning(
                "Project placement failed",
                extra={"issue_id": run.issue_key, "error": exc.message},
            )
            run.trace.log(f"Project placement failed: {exc.message}")
            return

        if item_id:
            run.github_operation = operation.model_copy(update={"project_item_id": item_id})
            run.trace.log("Added issue to project board")

    def _should_close_source(self, run: _RoutingRun) -> bool:
        operation = run.github_operation
        if not (run.source_repo and run.issue.number and operation.issue_url):
            return False
        # The destination issue may be the source issue itself
        return operation.issue_url != run.issue.url

    def _close_source(self, run: _RoutingRun) -> None:
        """Link and close the source issue. Failures are logged only."""
        try:
            self.github.close_and_link(
                run.source_repo,
                run.issue.number,
                run.github_operation.issue_url,
            )
        except GitHubAPIError as exc:
            logger.warning(
                "Failed to close source issue",
                extra={
                    "issue_id": run.issue_key,
                    "source_repo": run.source_repo,
                    "error": exc.message,
                },
            )
            run.trace.log(f"Failed to close source issue: {exc.message}")
            return
        run.trace.log(f"Closed source issue {run.source_repo}#{run.issue.number}")

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _queue(self, run: _RoutingRun, decision: ProcessingDecision) -> RoutingResult:
        outcome = QUEUED_OUTCOMES[decision]
        self.priority_processor.queue_issue(run.issue, run.priority, run.source_repo)
        run.trace.log(f"Issue queued: {outcome.value}")
        self._transition(run, RoutingStage.DONE, decision=decision.value)
        self._safe_emit(
            RoutingEvent(
                event_type=EventType.QUEUED,
                issue_id=run.issue_key,
                repository=run.repository,
                details={"decision": decision.value, "duration_seconds": run.elapsed},
            )
        )
        return self._result(run, success=False, outcome=outcome)

    def _block(self, run: _RoutingRun, reason: str) -> RoutingResult:
        run.trace.log(f"Issue blocked: {reason}")
        self._transition(run, RoutingStage.DONE, decision=ProcessingDecision.BLOCKED.value)
        self._safe_emit(
            RoutingEvent(
                event_type=EventType.BLOCKED,
                issue_id=run.issue_key,
                repository=run.repository,
                details={
                    "decision": ProcessingDecision.BLOCKED.value,
                    "reason": reason,
                    "duration_seconds": run.elapsed,
                },
            )
        )
        return self._result(run, success=False, outcome=RoutingOutcome.BLOCKED)

    def _finish(self, run: _RoutingRun, outcome: RoutingOutcome) -> RoutingResult:
        operation = run.github_operation
        event_type = (
            EventType.DUPLICATE
            if outcome == RoutingOutcome.DUPLICATE_SKIPPED
            else EventType.ROUTED
        )
        self._safe_emit(
            RoutingEvent(
                event_type=event_type,
                issue_id=run.issue_key,
                repository=run.repository,
                details={
                    "outcome": outcome.value,
                    "issue_url": operation.issue_url if operation else None,
                    "dry_run": self.dry_run,
                    "duration_seconds": run.elapsed,
                },
            )
        )
        logger.info(
            "Issue routed",
            extra={
                "issue_id": run.issue_key,
                "repo": run.repository,
                "outcome": outcome.value,
            },
        )
        return self._result(run, success=True, outcome=outcome)

    def _fail_destination(self, run: _RoutingRun, exc: GitHubAPIError) -> RoutingResult:
        """Fail the attempt on a destination error, keeping classification and duplicate info."""
        logger.error(
            "Destination operation failed",
            extra={
                "issue_id": run.issue_key,
                "repo": run.classification.repo,
                "status_code": exc.status_code,
                "error": exc.message,
                "classification": run.classification.to_dict(),
                "duplicate_reason": run.duplicate_check.reason,
            },
        )
        run.github_operation = GitHubOperationResult.failed(
            exc.message,
            status_code=exc.status_code,
            request_url=exc.request_url,
        )
        run.trace.log(f"Destination operation failed: {exc.message}")
        return self._fail(run, exc, keep_classification=True)

    def _fail(
        self,
        run: _RoutingRun,
        exc: Exception,
        keep_classification: bool = False,
    ) -> RoutingResult:
        """Transition to FAILED, record the attempt and emit an error event."""
        stage = run.trace.stage
        error_message = f"{stage.value}: {exc}"
        if not keep_classification:
            logger.exception(
                "Routing stage failed",
                extra={"issue_id": run.issue_key, "stage": stage.value},
            )
            run.trace.log(f"Routing failed: {exc}")
            run.classification = ClassificationResult.create_fallback(
                run.issue,
                default_repo=self.config.defaults.repo,
                default_labels=self.config.defaults.labels,
                extra_label=ROUTING_FAILED_LABEL,
                confidence=0.0,
                reasoning=ROUTING_FAILURE_REASONING,
            )

        try:
            self._transition(run, RoutingStage.FAILED, error=error_message)
        except Exception:
            logger.exception(
                "Failed to transition to FAILED stage",
                extra={"issue_id": run.issue_key},
            )

        if not self.dry_run:
            try:
                self.duplicate_store.record_processing(
                    run.issue,
                    run.classification,
                    run.api_calls,
                    ProcessingOutcome.FAILED,
                )
            except Exception:
                logger.exception(
                    "Failed to record failed attempt",
                    extra={"issue_id": run.issue_key},
                )

        self._safe_emit(
            RoutingEvent(
                event_type=EventType.ERROR,
                issue_id=run.issue_key,
                repository=run.repository,
                details={
                    "error_message": str(exc),
                    "stage": stage.value,
                    "duration_seconds": run.elapsed,
                },
            )
        )
        return self._result(
            run,
            success=False,
            outcome=RoutingOutcome.FAILED,
            error=str(exc),
        )

    def _result(
        self,
        run: _RoutingRun,
        success: bool,
        outcome: RoutingOutcome,
        error: Optional[str] = None,
    ) -> RoutingResult:
        return RoutingResult(
            success=success,
            outcome=outcome,
            classification=run.classification,
            duplicate_check=run.duplicate_check,
            github_operation=run.github_operation,
            priority=run.priority,
            warnings=run.warnings,
            stages=list(run.trace.stages),
            execution_time=run.elapsed,
            logs=list(run.trace.logs),
            error=error,
            dry_run=self.dry_run,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _route_candidates(self, candidates: List[BatchCandidate], queue: str) -> List[RoutingResult]:
        if candidates:
            logger.info(
                "Routing queued issues",
                extra={"queue": queue, "count": len(candidates)},
            )
        return [
            self.route_issue(candidate.issue, candidate.source_repo, bypass_queue=True)
            for candidate in candidates
        ]

    def _account(self, run: _RoutingRun, classifier_run: ClassifierRun) -> None:
        """Count a billed classifier call and record its usage."""
        if not classifier_run.api_called:
            return
        run.api_calls += 1
        if self.dry_run:
            return
        self.usage_meter.record_usage(classifier_run.input_tokens, classifier_run.output_tokens)

    def _labels_by_destination(self, destinations: Sequence[str]) -> Dict[str, List[str]]:
        """Existing labels per destination, falling back to configured rule labels."""
        return {
            repo: self.github.list_labels(repo) or self.config.labels_for(repo)
            for repo in destinations
        }

    def _organization_context(self, destinations: Sequence[str]) -> str:
        lines = ["Available repositories:"]
        for repo in destinations:
            labels = self.config.labels_for(repo)
            lines.append(f"{repo}: Common labels [{', '.join(labels)}]")
        return "\n".join(lines)

    def _transition(self, run: _RoutingRun, to_stage: RoutingStage, **details) -> None:
        """Advance the stage machine and emit a stage-transition event."""
        from_stage = run.trace.advance(to_stage)
        self._safe_emit(
            RoutingEvent(
                event_type=EventType.STAGE_TRANSITION,
                issue_id=run.issue_key,
                repository=run.repository,
                details={
                    "from_stage": from_stage.value,
                    "to_stage": to_stage.value,
                    **details,
                },
            )
        )

    def _safe_emit(self, event: RoutingEvent) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting routing."""
        try:
            self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit routing event",
                extra={
                    "event_type": event.event_type.value,
                    "issue_id": event.issue_id,
                },
            )
