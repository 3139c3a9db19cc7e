"""Static rule matching.

Evaluates the configured routing rules against an issue in declaration
order and returns a high-confidence classification for the first rule
whose predicates all hold.
"""

from src.routing.rules.matcher import RULE_CONFIDENCE, match, matches_rule

__all__ = [
    "match",
    "matches_rule",
    "RULE_CONFIDENCE",
]
