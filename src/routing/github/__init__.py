"""GitHub API clients for destination repositories and project boards.

This module provides a wrapper around the GitHub API for:
- Creating and updating issues at destination repositories
- Searching destinations for previously routed issues
- Closing source issues with a link to their destination
- Placing routed issues on a Projects v2 board

Includes rate limiting and retry logic for API resilience.
"""

from src.routing.github.client import (
    GitHubAPIError,
    GitHubClient,
    RateLimitError,
    split_repo,
)
from src.routing.github.formatting import (
    format_duplicate_comment,
    format_issue_body,
    format_routed_comment,
)
from src.routing.github.models import (
    ExistingIssue,
    GitHubOperationResult,
    ProjectField,
    ProjectInfo,
)
from src.routing.github.projects import ProjectsClient, create_default_project_fields

__all__ = [
    "create_default_project_fields",
    "ExistingIssue",
    "format_duplicate_comment",
    "format_issue_body",
    "format_routed_comment",
    "GitHubAPIError",
    "GitHubClient",
    "GitHubOperationResult",
    "ProjectField",
    "ProjectInfo",
    "ProjectsClient",
    "RateLimitError",
    "split_repo",
]
