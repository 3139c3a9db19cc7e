"""Priority scoring, processing decisions and issue queues."""

from src.routing.priority.models import (
    BatchCandidate,
    PriorityCategory,
    PriorityScore,
    ProcessingDecision,
    QueueStats,
)
from src.routing.priority.processor import (
    PriorityProcessor,
    calculate_similarity,
    extract_keywords,
)

__all__ = [
    "BatchCandidate",
    "PriorityCategory",
    "PriorityProcessor",
    "PriorityScore",
    "ProcessingDecision",
    "QueueStats",
    "calculate_similarity",
    "extract_keywords",
]
