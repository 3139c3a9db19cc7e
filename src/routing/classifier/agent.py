"""LLM-based issue classifier for the router.

This module implements the IssueClassifier that asks an LLM which
destination repository an issue belongs to, and with which labels,
assignees, priority and project-board fields.

The reply is decoded strictly: it must hold a JSON object that validates
against ClassificationPayload. Any failure (network error, timeout,
non-JSON reply, schema mismatch) yields the fallback classification
instead of an exception.

Requirements:
- Destinations outside the candidate list resolve by substring match,
  else to the configured default
- Unknown priorities become medium; confidence is clamped to [0, 1]
- Each call is bounded by a caller-level timeout

Source:
- src/routing/classifier/backend.py (LLMBackend)
- src/routing/classifier/prompts.py (build_classification_prompt)
- src/routing/config.py (LLMConfig, DefaultsConfig)
"""

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from src.routing.classifier.backend import LLMBackend
from src.routing.classifier.prompts import build_classification_prompt
from src.routing.config import DefaultsConfig, LLMConfig
from src.routing.models import ClassificationResult, Issue, Priority
from src.routing.usage.meter import estimate_tokens


logger = logging.getLogger(__name__)


# Expected reply size used for admission checks before the call is made
DEFAULT_OUTPUT_TOKENS = 1000

DEFAULT_CONFIDENCE = 0.5
DEFAULT_REASONING = "LLM classification"


class ClassificationError(Exception):
    """Raised when issue classification fails.

    Attributes:
        message: Human-readable error description.
        cause: The underlying exception that caused the failure.
    """

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.message = message
        self.cause = cause
        super().__init__(message)


class ClassificationParseError(ClassificationError):
    """Raised when the LLM reply cannot be decoded into a classification."""


class ClassificationPayload(BaseModel):
    """Schema of the JSON object the LLM must return."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    repo: str
    title: Optional[str] = None
    body: Optional[str] = None
    labels: List[str] = Field(default_factory=list)
    assignees: List[str] = Field(default_factory=list)
    priority: Optional[str] = None
    confidence: Optional[float] = None
    reasoning: Optional[str] = None
    project_fields: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("project_fields", "projectFields"),
    )


class ClassifierRun(BaseModel):
    """Outcome of one classification attempt.

    Attributes:
        result: The classification (real or fallback).
        succeeded: Whether the result came from a decoded LLM reply.
        api_called: Whether the LLM returned a reply, so the call was billed.
        input_tokens: Estimated prompt tokens.
        output_tokens: Estimated reply tokens.
        error: Why the fallback was used, when it was.
    """

    result: ClassificationResult
    succeeded: bool
    api_called: bool = False
    input_tokens: int = 0
    output_tokens: int = 0
    error: Optional[str] = None


def _parse_llm_response(response_text: str) -> Dict[str, Any]:
    """Parse the LLM response text into a dictionary.

    Handles markdown code fences and prose around the JSON object.

    Args:
        response_text: Raw text response from the LLM.

    Returns:
        Parsed dictionary from the JSON response.

    Raises:
        ClassificationParseError: If no JSON object can be decoded.
    """
    text = response_text.strip()

    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]

    if text.endswith("```"):
        text = text[:-3]

    text = text.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise ClassificationParseError("No JSON object found in response")
        try:
            data = json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            raise ClassificationParseError(f"Invalid JSON response: {e}", cause=e)

    if not isinstance(data, dict):
        raise ClassificationParseError(
            f"Expected a JSON object, got {type(data).__name__}"
        )
    return data


def resolve_destination(repo: str, candidates: Sequence[str], default_repo: str) -> str:
    """Map an LLM-chosen repository onto the candidate list.

    Args:
        repo: Repository named by the LLM.
        candidates: Allowed destinations.
        default_repo: Destination used when nothing matches.

    Returns:
        An exact candidate, a candidate related by case-insensitive
        substring in either direction, or the default.
    """
    repo = repo.strip()
    if not repo:
        return default_repo
    if repo in candidates:
        return repo
    lowered = repo.lower()
    for candidate in candidates:
        name = candidate.lower()
        if lowered in name or name in lowered:
            return candidate
    return default_repo


class IssueClassifier:
    """LLM-based classifier for inbound issues.

    Attributes:
        backend: Text-completion collaborator.
        llm_config: Model, max tokens and temperature.
        defaults: Default destination and labels used by the fallback.
        timeout: Caller-level timeout in seconds for each LLM call.

    Example:
        >>> classifier = IssueClassifier(backend, config.llm, config.defaults)
        >>> run = classifier.classify(issue, config.destinations())
        >>> run.result.repo
        'org/myprojects-ios'
    """

    def __init__(
        self,
        backend: LLMBackend,
        llm_config: LLMConfig,
        defaults: DefaultsConfig,
        timeout: float = 60.0,
    ):
        self.backend = backend
        self.llm_config = llm_config
        self.defaults = defaults
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="classifier")

    def estimate_request(
        self,
        issue: Issue,
        destinations: Sequence[str],
        labels_by_destination: Optional[Dict[str, List[str]]] = None,
        organization_context: Optional[str] = None,
    ) -> Tuple[int, int]:
        """Estimate the input and output tokens a classification would use.

        Returns:
            Tuple of (input_tokens, output_tokens).
        """
        prompt = build_classification_prompt(
            issue, destinations, labels_by_destination, organization_context
        )
        return estimate_tokens(prompt), min(DEFAULT_OUTPUT_TOKENS, self.llm_config.max_tokens)

    def fallback(self, issue: Issue) -> ClassificationResult:
        """The classification used whenever the LLM gives no usable answer."""
        return ClassificationResult.create_fallback(
            issue,
            default_repo=self.defaults.repo,
            default_labels=self.defaults.labels,
        )

    def classify(
        self,
        issue: Issue,
        destinations: Sequence[str],
        labels_by_destination: Optional[Dict[str, List[str]]] = None,
        organization_context: Optional[str] = None,
    ) -> ClassifierRun:
        """Classify an issue using the LLM.

        Args:
            issue: The issue to classify.
            destinations: Candidate destination repositories.
            labels_by_destination: Existing labels per destination.
            organization_context: Free-text context for the prompt.

        Returns:
            ClassifierRun with the classification. Never raises; failures
            produce the fallback classification with ``succeeded=False``.
        """
        prompt = build_classification_prompt(
            issue, destinations, labels_by_destination, organization_context
        )
        input_tokens = estimate_tokens(prompt)

        logger.info(
            "Classifying issue",
            extra={
                "issue_number": issue.number,
                "title": issue.title[:100],
                "destinations": len(destinations),
            },
        )

        try:
            response_text = self._complete(prompt)
        except ClassificationError as e:
            logger.error(
                "Issue classification failed",
                extra={
                    "error": e.message,
                    "error_type": type(e.cause).__name__ if e.cause else None,
                    "title": issue.title[:100],
                },
            )
            return ClassifierRun(
                result=self.fallback(issue),
                succeeded=False,
                input_tokens=input_tokens,
                error=e.message,
            )

        output_tokens = estimate_tokens(response_text)

        try:
            result = self._decode(response_text, issue, destinations)
        except ClassificationParseError as e:
            logger.warning(
                "Failed to decode LLM response",
                extra={"response_preview": response_text[:200], "error": e.message},
            )
            return ClassifierRun(
                result=self.fallback(issue),
                succeeded=False,
                api_called=True,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                error=e.message,
            )

        logger.info(
            "Issue classified successfully",
            extra={
                "repo": result.repo,
                "priority": result.priority.value,
                "confidence": result.confidence,
                "labels_count": len(result.labels),
            },
        )
        return ClassifierRun(
            result=result,
            succeeded=True,
            api_called=True,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    def close(self) -> None:
        """Release the worker threads without waiting for in-flight calls."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _complete(self, prompt: str) -> str:
        """Run the backend call under the caller-level timeout.

        Raises:
            ClassificationError: On timeout or any backend failure.
        """
        future = self._executor.submit(
            self.backend.complete,
            prompt,
            self.llm_config.max_tokens,
            self.llm_config.temperature,
        )
        try:
            response_text = future.result(timeout=self.timeout)
        except FuturesTimeoutError as e:
            future.cancel()
            raise ClassificationError(
                f"LLM call timed out after {self.timeout}s", cause=e
            )
        except Exception as e:
            raise ClassificationError(f"LLM invocation failed: {e}", cause=e)

        if not isinstance(response_text, str):
            raise ClassificationError(
                f"Unexpected response type: {type(response_text)}"
            )
        return response_text

    def _decode(
        self,
        response_text: str,
        issue: Issue,
        destinations: Sequence[str],
    ) -> ClassificationResult:
        """Decode an LLM reply into a ClassificationResult.

        Raises:
            ClassificationParseError: If the reply does not match the schema.
        """
        data = _parse_llm_response(response_text)
        try:
            payload = ClassificationPayload.model_validate(data)
        except ValidationError as e:
            raise ClassificationParseError(f"Response validation failed: {e}", cause=e)

        confidence = DEFAULT_CONFIDENCE if payload.confidence is None else payload.confidence
        return ClassificationResult(
            repo=resolve_destination(payload.repo, destinations, self.defaults.repo),
            title=payload.title or issue.title,
            body=payload.body or issue.body,
            labels=payload.labels,
            assignees=payload.assignees,
            priority=Priority.coerce(payload.priority),
            confidence=max(0.0, min(1.0, confidence)),
            reasoning=payload.reasoning or DEFAULT_REASONING,
            project_fields=payload.project_fields,
        )
