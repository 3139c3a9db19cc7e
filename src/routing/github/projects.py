"""GitHub Projects v2 board operations.

Places routed issues on an organization project board and sets field
values derived from the classification, through the GraphQL endpoint of
the shared GitHubClient.

Source:
- src/routing/github/client.py (GitHubClient.graphql)
- src/routing/github/models.py (ProjectInfo, ProjectField)
"""

import logging
from typing import Any, Dict, Optional

from src.routing.github.client import GitHubClient, split_repo
from src.routing.github.models import ProjectField, ProjectInfo
from src.routing.models import ClassificationResult, Priority


logger = logging.getLogger(__name__)


GET_PROJECT_QUERY = """
query($org: String!, $number: Int!) {
  organization(login: $org) {
    projectV2(number: $number) {
      id
      title
      fields(first: 20) {
        nodes {
          ... on ProjectV2Field { id name dataType }
          ... on ProjectV2SingleSelectField { id name dataType options { id name } }
          ... on ProjectV2IterationField { id name dataType }
        }
      }
    }
  }
}
"""

ADD_ITEM_MUTATION = """
mutation($projectId: ID!, $contentId: ID!) {
  addProjectV2ItemByContentId(input: {projectId: $projectId, contentId: $contentId}) {
    item { id }
  }
}
"""

UPDATE_FIELD_MUTATION = """
mutation($projectId: ID!, $itemId: ID!, $fieldId: ID!, $value: ProjectV2FieldValue!) {
  updateProjectV2ItemFieldValue(input: {
    projectId: $projectId
    itemId: $itemId
    fieldId: $fieldId
    value: $value
  }) {
    projectV2Item { id }
  }
}
"""

ISSUE_NODE_ID_QUERY = """
query($owner: String!, $repo: String!, $number: Int!) {
  repository(owner: $owner, name: $repo) {
    issue(number: $number) { id }
  }
}
"""

PROJECT_ITEMS_QUERY = """
query($projectId: ID!) {
  node(id: $projectId) {
    ... on ProjectV2 {
      items(first: 100) {
        nodes { content { ... on Issue { id } } }
      }
    }
  }
}
"""

PRIORITY_FIELDS = {
    Priority.CRITICAL: ("Critical", "Todo"),
    Priority.HIGH: ("High", "Todo"),
    Priority.MEDIUM: ("Medium", "Backlog"),
    Priority.LOW: ("Low", "Backlog"),
}

# Checked in order; first label present wins
TYPE_FIELDS = (
    ("bug", "Bug", "Medium"),
    ("feature", "Feature", "Large"),
    ("documentation", "Documentation", "Small"),
)


def create_default_project_fields(classification: ClassificationResult) -> Dict[str, Any]:
    """Derive board field values from a classification.

    Priority maps onto the Priority and Status fields, and the first of the
    bug/feature/documentation labels maps onto Type and Size. Explicit
    ``project_fields`` on the classification win over derived values.

    Args:
        classification: The classification of the routed issue.

    Returns:
        Field name to value mapping.
    """
    priority, status = PRIORITY_FIELDS[classification.priority]
    fields: Dict[str, Any] = {"Priority": priority, "Status": status}

    for label, issue_type, size in TYPE_FIELDS:
        if label in classification.labels:
            fields["Type"] = issue_type
            fields["Size"] = size
            break

    fields.update(classification.project_fields)
    return fields


def _field_value(field: ProjectField, value: Any) -> Optional[Dict[str, Any]]:
    """Build the ProjectV2FieldValue input for a field, or None if unsupported."""
    if field.data_type == "TEXT":
        return {"text": str(value)}
    if field.data_type == "NUMBER":
        try:
            return {"number": float(value)}
        except (TypeError, ValueError):
            return None
    if field.data_type == "DATE":
        return {"date": str(value)}
    if field.data_type == "SINGLE_SELECT":
        option_id = field.options.get(str(value))
        if option_id is None:
            return None
        return {"singleSelectOptionId": option_id}
    return None


class ProjectsClient:
    """Projects v2 operations on top of a GitHubClient.

    Attributes:
        github: Client used for GraphQL requests.
    """

    def __init__(self, github: GitHubClient):
        self.github = github

    def get_board(self, org: str, number: int) -> Optional[ProjectInfo]:
        """Fetch a board and its fields.

        Returns:
            ProjectInfo, or None if the organization has no such board.

        Raises:
            GitHubAPIError: If the request fails.
        """
        data = self.github.graphql(GET_PROJECT_QUERY, {"org": org, "number": number})
        project = (data.get("organization") or {}).get("projectV2")
        if not project:
            logger.warning("Project board not found", extra={"org": org, "number": number})
            return None

        fields = []
        for node in (project.get("fields") or {}).get("nodes", []):
            if not node or "id" not in node:
                continue
            fields.append(
                ProjectField(
                    id=node["id"],
                    name=node.get("name", ""),
                    data_type=node.get("dataType", "TEXT"),
                    options={o["name"]: o["id"] for o in node.get("options") or []},
                )
            )
        return ProjectInfo(id=project["id"], title=project.get("title", ""), fields=fields)

    def get_issue_node_id(self, repo: str, issue_number: int) -> Optional[str]:
        """Resolve the GraphQL node ID of an issue."""
        owner, name = split_repo(repo)
        data = self.github.graphql(
            ISSUE_NODE_ID_QUERY,
            {"owner": owner, "repo": name, "number": issue_number},
        )
        issue = (data.get("repository") or {}).get("issue") or {}
        return issue.get("id")

    def is_item_present(self, board_id: str, issue_node_id: str) -> bool:
        """Whether an issue is among the first 100 items on a board."""
        data = self.github.graphql(PROJECT_ITEMS_QUERY, {"projectId": board_id})
        nodes = ((data.get("node") or {}).get("items") or {}).get("nodes", [])
        return any((node.get("content") or {}).get("id") == issue_node_id for node in nodes)

    def add_item(self, board_id: str, issue_node_id: str) -> str:
        """Add an issue to a board.

        Returns:
            The new project item ID.
        """
        data = self.github.graphql(
            ADD_ITEM_MUTATION,
            {"projectId": board_id, "contentId": issue_node_id},
        )
        return data["addProjectV2ItemByContentId"]["item"]["id"]

    def set_field(self, board: ProjectInfo, item_id: str, field_name: str, value: Any) -> bool:
        """Set one field value on a board item.

        Unknown fields, unknown single-select options and unsupported field
        types are skipped with a warning.

        Returns:
            True if the field was written.
        """
        field = board.field(field_name)
        if field is None:
            logger.warning("Project field not found", extra={"field": field_name})
            return False

        field_value = _field_value(field, value)
        if field_value is None:
            logger.warning(
                "Unsupported project field value",
                extra={"field": field_name, "data_type": field.data_type, "value": str(value)},
            )
            return False

        self.github.graphql(
            UPDATE_FIELD_MUTATION,
            {
                "projectId": board.id,
                "itemId": item_id,
                "fieldId": field.id,
                "value": field_value,
            },
        )
        return True

    def place_issue(
        self,
        board: ProjectInfo,
        issue_node_id: str,
        classification: ClassificationResult,
    ) -> Optional[str]:
        """Add an issue to a board and set its fields.

        Args:
            board: The destination board.
            issue_node_id: GraphQL node ID of the routed issue.
            classification: Classification the field values derive from.

        Returns:
            The new item ID, or None if the issue was already on the board.
        """
        if self.is_item_present(board.id, issue_node_id):
            logger.info(
                "Issue already on project board",
                extra={"board_id": board.id, "issue_node_id": issue_node_id},
            )
            return None

        item_id = self.add_item(board.id, issue_node_id)
        fields = create_default_project_fields(classification)
        written = [name for name, value in fields.items() if self.set_field(board, item_id, name, value)]

        logger.info(
            "Issue added to project board",
            extra={"board_id": board.id, "item_id": item_id, "fields": written},
        )
        return item_id
