"""LLM-based issue classification.

Builds the classification prompt, calls the LLM backend under a timeout,
and decodes the reply into a ClassificationResult, falling back to the
configured default destination on any failure.
"""

from src.routing.classifier.agent import (
    ClassificationError,
    ClassificationParseError,
    ClassificationPayload,
    ClassifierRun,
    IssueClassifier,
    resolve_destination,
)
from src.routing.classifier.backend import LangChainBackend, LLMBackend
from src.routing.classifier.prompts import (
    CLASSIFIER_SYSTEM_PROMPT,
    build_classification_prompt,
)

__all__ = [
    "build_classification_prompt",
    "ClassificationError",
    "ClassificationParseError",
    "ClassificationPayload",
    "CLASSIFIER_SYSTEM_PROMPT",
    "ClassifierRun",
    "IssueClassifier",
    "LangChainBackend",
    "LLMBackend",
    "resolve_destination",
]
