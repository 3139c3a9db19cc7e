"""Markdown formatting for routed issues and routing comments.

Requirements:
- Created issues embed traceability metadata ahead of the body
- Duplicate reports are summarized as a comment on the existing issue
- Source issues receive a link to their destination before closing

Source:
- src/routing/models.py (Issue, ClassificationResult)
- src/routing/dedup/hashing.py (short_content_hash)
"""

from typing import List

from src.routing.dedup.hashing import short_content_hash
from src.routing.models import ClassificationResult, Issue


METADATA_MARKER = "<!-- Routing Metadata -->"

GENERATED_FOOTER = "*This comment was automatically generated by the routing system.*"


def format_issue_body(body: str, source: Issue) -> str:
    """Prefix an issue body with routing metadata.

    Args:
        body: Classified body text.
        source: The issue being routed.

    Returns:
        Body with a metadata block naming the original issue, author,
        creation time, chat thread and content hash.
    """
    lines: List[str] = [
        METADATA_MARKER,
        f"**Original Issue:** {source.url}",
        f"**Author:** @{source.author}",
        f"**Created:** {source.created_at.isoformat()}",
    ]
    if source.slack_permalink:
        lines.append(f"**Slack Thread:** {source.slack_permalink}")
    lines.append(f"**Content Hash:** `{short_content_hash(source)}`")
    lines.extend(["", "---", ""])
    return "\n".join(lines) + body


def format_duplicate_comment(classification: ClassificationResult, source: Issue) -> str:
    """Format the comment added to an existing issue for a new duplicate report.

    Args:
        classification: Classification of the new report.
        source: The new report.

    Returns:
        Markdown comment body.
    """
    lines: List[str] = [
        "## 🔄 Duplicate Issue Update",
        "",
        f"A similar issue was reported: {source.url}",
        f"**Reporter:** @{source.author}",
        f"**Date:** {source.created_at.isoformat()}",
    ]
    if source.slack_permalink:
        lines.append(f"**Slack Thread:** {source.slack_permalink}")
    if classification.reasoning:
        lines.extend(["", "**Classification Notes:**", classification.reasoning])
    lines.extend(["", "---", GENERATED_FOOTER])
    return "\n".join(lines)


def format_routed_comment(target_url: str) -> str:
    """Format the comment left on a source issue before it is closed."""
    return (
        "🎯 **Issue Routed Successfully**\n\n"
        f"This issue has been routed to: {target_url}\n\n"
        "*Automatically closed by routing system*"
    )
