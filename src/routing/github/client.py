"""GitHub API client for destination repository operations.

This module provides a synchronous wrapper around the GitHub REST and
GraphQL APIs for:
- Creating issues at a destination repository
- Updating an existing issue with a duplicate report
- Searching a destination for an issue by body text
- Listing a repository's labels
- Closing a source issue with a link to its destination

Includes rate limiting and retry logic for API resilience.

Requirements:
- Transient failures (408, 429, 5xx, timeouts, transport errors) are
  retried with exponential backoff and full jitter
- Errors that survive the retries raise GitHubAPIError
- Label listing and text search degrade to empty answers on failure

Source:
- src/routing/github/models.py (GitHubOperationResult, ExistingIssue)
- src/routing/config.py (github_token, github_base_url)
"""

import logging
import random
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from src.routing.github.formatting import format_routed_comment
from src.routing.github.models import ExistingIssue, GitHubOperationResult


logger = logging.getLogger(__name__)


ROUTED_LABELS = ["routed", "automated"]


class GitHubAPIError(Exception):
    """Raised when a GitHub API request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response.
        response_body: Response body from GitHub API.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class RateLimitError(GitHubAPIError):
    """Raised when GitHub API rate limit is exceeded.

    Attributes:
        reset_at: Unix timestamp when the rate limit resets.
        retry_after: Seconds to wait before retrying.
    """

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after


def split_repo(repo: str) -> Tuple[str, str]:
    """Split ``owner/repo`` into its parts.

    Raises:
        GitHubAPIError: If the name is not owner/repo shaped.
    """
    parts = repo.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise GitHubAPIError(f"Invalid repository format: {repo}")
    return parts[0], parts[1]


class GitHubClient:
    """GitHub API client with rate limiting and retry logic.

    Attributes:
        token: GitHub API token (PAT or GitHub App token).
        base_url: Base URL for GitHub API (default: https://api.github.com).
        max_retries: Maximum number of retry attempts for transient failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.

    Example:
        >>> with GitHubClient(token="ghp_xxx") as client:
        ...     client.create_issue("org/repo", "Title", "Body", ["bug"], [])
    """

    # HTTP status codes that should trigger a retry
    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the GitHub client.

        Args:
            token: GitHub API token for authentication.
            base_url: Base URL for GitHub API. Use this to support
                      GitHub Enterprise Server endpoints.
            max_retries: Maximum number of retry attempts.
            base_delay: Base delay in seconds for exponential backoff.
            max_delay: Maximum delay in seconds between retries.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        """Get the HTTP client, creating it if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(
                base_url=self.base_url,
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "IssueRouter/1.0",
        }

    def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            self._client.close()
            self._client = None

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate backoff delay with full jitter.

        Args:
            attempt: The current retry attempt (0-indexed).

        Returns:
            Delay in seconds before the next retry.
        """
        exponential_delay = self.base_delay * (2 ** attempt)
        capped_delay = min(exponential_delay, self.max_delay)
        return random.uniform(0, capped_delay)

    def _parse_int_header(self, headers: httpx.Headers, name: str) -> Optional[int]:
        value = headers.get(name)
        if value is not None:
            try:
                return int(value)
            except ValueError:
                pass
        return None

    def _rate_limit_error(self, response: httpx.Response) -> RateLimitError:
        """Build a RateLimitError from a rate-limited response."""
        reset_at = self._parse_int_header(response.headers, "x-ratelimit-reset")

        retry_after = None
        if reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))

        retry_after_header = self._parse_int_header(response.headers, "retry-after")
        if retry_after_header is not None:
            retry_after = retry_after_header

        logger.warning(
            "GitHub API rate limit exceeded",
            extra={
                "reset_at": reset_at,
                "retry_after": retry_after,
                "limit": self._parse_int_header(response.headers, "x-ratelimit-limit"),
            },
        )
        return RateLimitError(
            message="GitHub API rate limit exceeded",
            status_code=response.status_code,
            response_body=response.text,
            request_url=str(response.url),
            reset_at=reset_at,
            retry_after=retry_after,
        )

    def _is_rate_limited(self, response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code == 403:
            remaining = self._parse_int_header(response.headers, "x-ratelimit-remaining")
            return remaining == 0
        return False

    def _retry_delay(self, response: httpx.Response, attempt: int) -> float:
        """Delay before retrying a response, honouring Retry-After when short."""
        retry_after = self._parse_int_header(response.headers, "retry-after")
        if retry_after is not None and retry_after <= self.max_delay:
            return float(retry_after)
        return self._calculate_backoff(attempt)

    def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an HTTP request with retry logic.

        Args:
            method: HTTP method (GET, POST, PATCH, ...).
            path: API path (e.g., /repos/owner/repo/issues).
            json_data: Optional JSON body for the request.
            params: Optional query parameters.

        Returns:
            The HTTP response from GitHub.

        Raises:
            RateLimitError: If the rate limit is still exceeded after retries.
            GitHubAPIError: If the request fails after all retries.
        """
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = self.client.request(
                    method=method,
                    url=path,
                    json=json_data,
                    params=params,
                )
            except httpx.TimeoutException as e:
                last_exception = e
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Request timeout, retrying",
                        extra={
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    time.sleep(delay)
                continue
            except httpx.RequestError as e:
                last_exception = e
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Request error, retrying",
                        extra={
                            "error": str(e),
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    time.sleep(delay)
                continue

            rate_limited = self._is_rate_limited(response)
            if rate_limited or response.status_code in self.RETRYABLE_STATUS_CODES:
                if attempt < self.max_retries:
                    delay = self._retry_delay(response, attempt)
                    logger.warning(
                        "Retryable error from GitHub API",
                        extra={
                            "status_code": response.status_code,
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    time.sleep(delay)
                    continue
                if rate_limited:
                    raise self._rate_limit_error(response)

            if response.status_code >= 400:
                error_body = response.text
                logger.error(
                    "GitHub API error",
                    extra={
                        "status_code": response.status_code,
                        "path": path,
                        "method": method,
                        "response_body": error_body[:500],
                    },
                )
                raise GitHubAPIError(
                    message=f"GitHub API error: {response.status_code}",
                    status_code=response.status_code,
                    response_body=error_body,
                    request_url=str(response.url),
                )

            return response

        logger.error(
            "GitHub API request failed after all retries",
            extra={
                "path": path,
                "method": method,
                "max_retries": self.max_retries,
                "last_error": str(last_exception),
            },
        )
        raise GitHubAPIError(
            message=f"Request failed after {self.max_retries} retries: {last_exception}",
            request_url=f"{self.base_url}{path}",
        )

    def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run a GraphQL query and return its ``data`` object.

        Raises:
            GitHubAPIError: If the request fails or the response carries errors.
        """
        response = self._request(
            method="POST",
            path="/graphql",
            json_data={"query": query, "variables": variables or {}},
        )
        payload = response.json()
        errors = payload.get("errors")
        if errors:
            messages = "; ".join(str(e.get("message", e)) for e in errors)
            raise GitHubAPIError(
                message=f"GraphQL error: {messages}",
                status_code=response.status_code,
                response_body=response.text,
                request_url=str(response.url),
            )
        return payload.get("data") or {}

    # ------------------------------------------------------------------
    # Issue operations
    # ------------------------------------------------------------------

    def get_issue(self, repo: str, issue_number: int) -> Dict[str, Any]:
        """Get issue details.

        Raises:
            GitHubAPIError: If the request fails.
        """
        owner, name = split_repo(repo)
        response = self._request(method="GET", path=f"/repos/{owner}/{name}/issues/{issue_number}")
        return response.json()

    def create_issue(
        self,
        repo: str,
        title: str,
        body: str,
        labels: List[str],
        assignees: List[str],
    ) -> GitHubOperationResult:
        """Create an issue at a destination repository.

        Args:
            repo: Destination repository (owner/repo).
            title: Issue title.
            body: Issue body, including routing metadata.
            labels: Labels to apply.
            assignees: Assignees to apply.

        Returns:
            Successful GitHubOperationResult with number, URL and node ID.

        Raises:
            GitHubAPIError: If the request fails.
        """
        owner, name = split_repo(repo)

        logger.info(
            "Creating issue",
            extra={"repo": repo, "title": title[:100], "labels": labels},
        )

        response = self._request(
            method="POST",
            path=f"/repos/{owner}/{name}/issues",
            json_data={
                "title": title,
                "body": body,
                "labels": labels,
                "assignees": assignees,
            },
        )
        data = response.json()

        logger.info(
            "Issue created successfully",
            extra={"repo": repo, "issue_number": data.get("number"), "url": data.get("html_url")},
        )
        return GitHubOperationResult(
            success=True,
            issue_number=data.get("number"),
            issue_url=data.get("html_url"),
            node_id=data.get("node_id"),
            details={"id": data.get("id")},
        )

    def update_issue(
        self,
        repo: str,
        issue_number: int,
        comment_body: str,
        labels: List[str],
    ) -> GitHubOperationResult:
        """Add a comment to an existing issue and merge in new labels.

        Labels are only written when the merge adds something.

        Args:
            repo: Destination repository (owner/repo).
            issue_number: Existing issue number.
            comment_body: Comment summarizing the new report.
            labels: Labels to merge into the issue's current labels.

        Returns:
            Successful GitHubOperationResult for the existing issue.

        Raises:
            GitHubAPIError: If any request fails.
        """
        owner, name = split_repo(repo)
        issue_path = f"/repos/{owner}/{name}/issues/{issue_number}"

        logger.info(
            "Updating existing issue",
            extra={"repo": repo, "issue_number": issue_number},
        )

        comment = self._request(
            method="POST",
            path=f"{issue_path}/comments",
            json_data={"body": comment_body},
        ).json()

        current = self._request(method="GET", path=issue_path).json()
        existing_labels = [
            label if isinstance(label, str) else label.get("name")
            for label in current.get("labels", [])
        ]
        existing_labels = [label for label in existing_labels if label]
        merged = list(existing_labels)
        for label in labels:
            if label not in merged:
                merged.append(label)

        if len(merged) > len(existing_labels):
            self._request(method="PATCH", path=issue_path, json_data={"labels": merged})

        logger.info(
            "Issue updated successfully",
            extra={
                "repo": repo,
                "issue_number": issue_number,
                "labels_added": len(merged) - len(existing_labels),
            },
        )
        return GitHubOperationResult(
            success=True,
            issue_number=issue_number,
            issue_url=current.get("html_url"),
            node_id=current.get("node_id"),
            details={
                "comment_id": comment.get("id"),
                "labels_added": len(merged) - len(existing_labels),
            },
        )

    def search_for_duplicate_by_text(self, repo: str, query: str) -> Optional[ExistingIssue]:
        """Find the newest issue in a repository whose body contains ``query``.

        Args:
            repo: Repository to search.
            query: Exact text to look for in issue bodies.

        Returns:
            The newest matching issue, or None when nothing matches or the
            search fails.
        """
        try:
            split_repo(repo)
            response = self._request(
                method="GET",
                path="/search/issues",
                params={
                    "q": f'repo:{repo} "{query}" in:body',
                    "sort": "created",
                    "order": "desc",
                    "per_page": 5,
                },
            )
        except GitHubAPIError as e:
            logger.warning(
                "Duplicate search failed",
                extra={"repo": repo, "error": e.message},
            )
            return None

        data = response.json()
        items = data.get("items") or []
        if not data.get("total_count") or not items:
            return None
        item = items[0]
        return ExistingIssue(
            repo=repo,
            number=item["number"],
            url=item.get("html_url", ""),
            node_id=item.get("node_id"),
        )

    def list_labels(self, repo: str) -> List[str]:
        """Return a repository's label names, or an empty list on failure."""
        try:
            owner, name = split_repo(repo)
            response = self._request(
                method="GET",
                path=f"/repos/{owner}/{name}/labels",
                params={"per_page": 100},
            )
        except GitHubAPIError as e:
            logger.warning(
                "Failed to list labels",
                extra={"repo": repo, "error": e.message},
            )
            return []
        return [label["name"] for label in response.json() if label.get("name")]

    def close_and_link(
        self,
        source_repo: str,
        source_number: int,
        target_url: str,
    ) -> GitHubOperationResult:
        """Comment with the destination link and close the source issue.

        Args:
            source_repo: Repository the issue was reported in.
            source_number: Source issue number.
            target_url: URL of the destination issue.

        Returns:
            Successful GitHubOperationResult for the source issue.

        Raises:
            GitHubAPIError: If any request fails.
        """
        owner, name = split_repo(source_repo)
        issue_path = f"/repos/{owner}/{name}/issues/{source_number}"

        self._request(
            method="POST",
            path=f"{issue_path}/comments",
            json_data={"body": format_routed_comment(target_url)},
        )
        data = self._request(
            method="PATCH",
            path=issue_path,
            json_data={"state": "closed", "labels": ROUTED_LABELS},
        ).json()

        logger.info(
            "Source issue closed",
            extra={"repo": source_repo, "issue_number": source_number, "target_url": target_url},
        )
        return GitHubOperationResult(
            success=True,
            issue_number=source_number,
            issue_url=data.get("html_url"),
            details={"closed_at": data.get("closed_at")},
        )
