"""Data models for destination repository and project board operations."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class GitHubOperationResult(BaseModel):
    """Outcome of a destination write (create, update or close).

    Attributes:
        success: Whether the operation completed.
        issue_number: Number of the issue operated on.
        issue_url: HTML URL of the issue operated on.
        node_id: GraphQL node ID of the issue, when returned.
        project_item_id: Project board item created for the issue, if any.
        error: Error description when the operation failed.
        details: Extra context (comment IDs, labels added, ...).
    """

    success: bool
    issue_number: Optional[int] = None
    issue_url: Optional[str] = None
    node_id: Optional[str] = None
    project_item_id: Optional[str] = None
    error: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def failed(cls, error: str, **details: Any) -> "GitHubOperationResult":
        """Create a failed result carrying the error and its context."""
        return cls(success=False, error=error, details=details)


class ExistingIssue(BaseModel):
    """An issue found at a destination by text search."""

    repo: str
    number: int
    url: str
    node_id: Optional[str] = None


class ProjectField(BaseModel):
    """A field of a Projects v2 board.

    Attributes:
        id: GraphQL node ID of the field.
        name: Display name (e.g. "Priority").
        data_type: TEXT, NUMBER, DATE, SINGLE_SELECT, ...
        options: Single-select option names mapped to option IDs.
    """

    id: str
    name: str
    data_type: str = "TEXT"
    options: Dict[str, str] = Field(default_factory=dict)


class ProjectInfo(BaseModel):
    """A Projects v2 board and its fields."""

    id: str
    title: str = ""
    fields: List[ProjectField] = Field(default_factory=list)

    def field(self, name: str) -> Optional[ProjectField]:
        """Look up a field by name, case-insensitively."""
        lowered = name.lower()
        for field in self.fields:
            if field.name.lower() == lowered:
                return field
        return None
