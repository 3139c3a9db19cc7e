"""Prompt construction for issue classification."""

from typing import Dict, List, Optional, Sequence

from src.routing.models import Issue


CLASSIFIER_SYSTEM_PROMPT = (
    "You are an expert at categorizing GitHub issues for a multi-repository "
    "organization. You MUST respond with valid JSON only."
)

NO_CONTEXT = "No specific context provided"


CLASSIFICATION_TEMPLATE = """You are an expert at categorizing GitHub issues for a multi-repository organization.

## Issue to Classify
**Title:** {title}
**Body:** {body}
**Author:** {author}
**Existing Labels:** {labels}

## Organization Context
{organization_context}

## Available Repositories and Their Common Labels
{repositories}

## Classification Task
Analyze the issue and respond with a JSON object of this exact structure:
```json
{{
  "repo": "owner/repo-name",
  "title": "refined issue title if needed",
  "body": "enhanced or cleaned issue body if needed",
  "labels": ["label1", "label2"],
  "assignees": ["username1"],
  "priority": "low|medium|high|critical",
  "confidence": 0.85,
  "reasoning": "Brief explanation of classification logic",
  "project_fields": {{"Status": "Todo", "Size": "Medium"}}
}}
```

## Classification Guidelines
1. **Repository Selection**: choose the repository from the list above that best fits:
   - the technical domain (iOS, backend, frontend, etc.)
   - keywords in the issue content
   - technologies or frameworks mentioned

2. **Label Assignment**:
   - prefer the repository's existing labels
   - add a type label (bug, feature, documentation, etc.)
   - include technology-specific labels where relevant
   - consider urgency and complexity labels

3. **Priority Assessment**:
   - **critical**: system down, security vulnerabilities, blocking issues
   - **high**: important features, significant bugs affecting users
   - **medium**: standard features, non-blocking bugs
   - **low**: nice-to-have features, minor improvements

4. **Confidence Scoring**:
   - 0.9+: very clear categorization with obvious keywords or context
   - 0.7-0.9: good categorization with reasonable indicators
   - 0.5-0.7: moderate confidence, some ambiguity
   - below 0.5: low confidence, unclear categorization

5. **Title/Body Enhancement**:
   - fix typos and formatting
   - clarify ambiguous descriptions
   - keep the original meaning intact

6. **Assignee Suggestions**: only suggest assignees when there is a clear domain expert; otherwise leave the list empty.

Respond with valid JSON only, no additional text."""


def format_repositories(
    destinations: Sequence[str],
    labels_by_destination: Optional[Dict[str, List[str]]] = None,
) -> str:
    """Render one ``- owner/repo: [labels]`` line per destination."""
    labels_by_destination = labels_by_destination or {}
    lines = []
    for repo in destinations:
        labels = labels_by_destination.get(repo, [])
        lines.append(f"- {repo}: [{', '.join(labels)}]")
    return "\n".join(lines)


def build_classification_prompt(
    issue: Issue,
    destinations: Sequence[str],
    labels_by_destination: Optional[Dict[str, List[str]]] = None,
    organization_context: Optional[str] = None,
) -> str:
    """Build the classification prompt for an issue.

    Args:
        issue: The issue to classify.
        destinations: Candidate destination repositories.
        labels_by_destination: Existing labels per destination.
        organization_context: Free-text context about the organization.

    Returns:
        Prompt string for the LLM.
    """
    return CLASSIFICATION_TEMPLATE.format(
        title=issue.title,
        body=issue.body or "(no description provided)",
        author=issue.author or "unknown",
        labels=", ".join(issue.labels) or "none",
        organization_context=organization_context or NO_CONTEXT,
        repositories=format_repositories(destinations, labels_by_destination),
    )
