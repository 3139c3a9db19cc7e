"""Rule matcher for static issue routing.

A rule matches only if every populated predicate group holds:

- keywords: case-insensitive substring of ``title + " " + body``
- title_patterns / body_patterns: case-insensitive regex search on the
  respective field
- labels: case-insensitive exact match against the issue's labels
- channels: case-insensitive substring of the issue's source channel

Within a group one hit is enough. The first matching rule wins. Matching is
a pure function of the issue and the rule list and never raises.

Source:
- src/routing/config.py (RoutingRule, RuleCondition)
- src/routing/models.py (Issue, ClassificationResult)
"""

import json
import logging
import re
from typing import Optional, Sequence

from src.routing.config import RoutingRule, RuleCondition
from src.routing.models import ClassificationResult, Issue


logger = logging.getLogger(__name__)


RULE_CONFIDENCE = 0.95


def _keywords_match(issue: Issue, keywords: Sequence[str]) -> bool:
    content = issue.content.lower()
    return any(keyword.lower() in content for keyword in keywords)


def _patterns_match(text: str, patterns: Sequence[str]) -> bool:
    for pattern in patterns:
        try:
            if re.search(pattern, text, re.IGNORECASE):
                return True
        except re.error:
            # Patterns are validated at load time; a bad one simply never matches.
            logger.warning("Skipping invalid rule pattern", extra={"pattern": pattern})
    return False


def _labels_match(issue: Issue, labels: Sequence[str]) -> bool:
    issue_labels = {label.lower() for label in issue.labels}
    return any(label.lower() in issue_labels for label in labels)


def _channels_match(issue: Issue, channels: Sequence[str]) -> bool:
    channel = issue.channel
    if not channel:
        return False
    channel = channel.lower()
    return any(candidate.lower() in channel for candidate in channels)


def matches_rule(issue: Issue, condition: RuleCondition) -> bool:
    """Check whether every populated predicate group of a rule holds.

    Args:
        issue: The issue to evaluate.
        condition: The rule's ``when`` block.

    Returns:
        True if the rule matches the issue.
    """
    if condition.keywords and not _keywords_match(issue, condition.keywords):
        return False
    if condition.title_patterns and not _patterns_match(issue.title, condition.title_patterns):
        return False
    if condition.body_patterns and not _patterns_match(issue.body, condition.body_patterns):
        return False
    if condition.labels and not _labels_match(issue, condition.labels):
        return False
    if condition.channels and not _channels_match(issue, condition.channels):
        return False
    return not condition.is_empty


def match(issue: Issue, rules: Sequence[RoutingRule]) -> Optional[ClassificationResult]:
    """Return the classification of the first rule that matches.

    Args:
        issue: The issue to route.
        rules: Routing rules in declaration order.

    Returns:
        ClassificationResult with confidence 0.95 for the first full match,
        or None when no rule matches.
    """
    for rule in rules:
        if not matches_rule(issue, rule.when):
            continue

        route = rule.route
        logger.info(
            "Routing rule matched",
            extra={
                "rule": rule.name or route.repo,
                "repo": route.repo,
                "issue_number": issue.number,
            },
        )
        return ClassificationResult(
            repo=route.repo,
            title=issue.title,
            body=issue.body,
            labels=list(route.labels) + list(issue.labels),
            assignees=list(route.assignees),
            priority=route.priority,
            confidence=RULE_CONFIDENCE,
            reasoning=f"Matched routing rule: {json.dumps(rule.when.describe())}",
            project_fields=dict(route.project_fields),
        )

    logger.debug("No routing rule matched", extra={"issue_number": issue.number})
    return None
