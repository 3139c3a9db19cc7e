"""Unit tests for the static rule matcher."""

from typing import List, Optional

from src.routing.config import RoutingRule
from src.routing.models import Issue, Priority
from src.routing.rules import RULE_CONFIDENCE, match, matches_rule


def _make_issue(
    title: str = "MyProjects crashes on launch",
    body: str = "",
    labels: Optional[List[str]] = None,
    channel: Optional[str] = None,
) -> Issue:
    source_meta = {"repository": "org/inbox"}
    if channel:
        source_meta["channel"] = channel
    return Issue(
        title=title,
        body=body,
        number=1,
        author="reporter",
        labels=labels or [],
        source_meta=source_meta,
    )


def _rule(when: dict, repo: str = "org/myprojects-ios", **route) -> RoutingRule:
    return RoutingRule.model_validate({"when": when, "route": {"repo": repo, **route}})


class TestMatch:
    """Tests for first-match-wins rule evaluation."""

    def test_keyword_rule_produces_rule_classification(self):
        rules = [_rule({"keywords": ["MyProjects"]}, priority="high")]

        result = match(_make_issue(), rules)

        assert result is not None
        assert result.repo == "org/myprojects-ios"
        assert result.priority == Priority.HIGH
        assert result.confidence == RULE_CONFIDENCE == 0.95

    def test_no_rule_matches_returns_none(self):
        rules = [_rule({"keywords": ["Android"]})]

        assert match(_make_issue(), rules) is None

    def test_first_matching_rule_wins(self):
        rules = [
            _rule({"keywords": ["crashes"]}, repo="org/first"),
            _rule({"keywords": ["MyProjects"]}, repo="org/second"),
        ]

        assert match(_make_issue(), rules).repo == "org/first"

    def test_keywords_are_case_insensitive_substrings_of_title_and_body(self):
        rules = [_rule({"keywords": ["cloudkit"]})]
        issue = _make_issue(title="Sync stalls", body="The CLOUDKIT zone never finishes")

        assert match(issue, rules) is not None

    def test_labels_copy_route_labels_then_issue_labels(self):
        rules = [_rule({"keywords": ["MyProjects"]}, labels=["ios", "bug"])]
        issue = _make_issue(labels=["bug", "from-slack"])

        result = match(issue, rules)

        assert result.labels == ["ios", "bug", "from-slack"]

    def test_route_fields_are_copied(self):
        rules = [
            _rule(
                {"keywords": ["MyProjects"]},
                assignees=["octocat"],
                project_fields={"Component": "iOS"},
            )
        ]

        result = match(_make_issue(), rules)

        assert result.assignees == ["octocat"]
        assert result.project_fields == {"Component": "iOS"}
        assert result.title == "MyProjects crashes on launch"
        assert "keywords" in result.reasoning


class TestMatchesRule:
    """Tests for predicate groups and their combination."""

    def test_all_populated_groups_must_hold(self):
        rule = _rule({"keywords": ["MyProjects"], "labels": ["ios"]})

        assert not matches_rule(_make_issue(), rule.when)
        assert matches_rule(_make_issue(labels=["iOS"]), rule.when)

    def test_title_pattern_is_case_insensitive_regex(self):
        rule = _rule({"title_patterns": ["^myprojects\\s+crash"]})

        assert matches_rule(_make_issue(), rule.when)
        assert not matches_rule(_make_issue(title="Crash in MyProjects"), rule.when)

    def test_body_pattern_searches_body_only(self):
        rule = _rule({"body_patterns": ["stack trace"]})

        assert not matches_rule(_make_issue(title="stack trace attached"), rule.when)
        assert matches_rule(_make_issue(body="See the Stack Trace below"), rule.when)

    def test_channel_is_substring_match(self):
        rule = _rule({"channels": ["ios-bugs"]})

        assert matches_rule(_make_issue(channel="#IOS-BUGS-triage"), rule.when)
        assert not matches_rule(_make_issue(channel="#web"), rule.when)

    def test_issue_without_channel_fails_channel_rule(self):
        rule = _rule({"channels": ["ios-bugs"]})

        assert not matches_rule(_make_issue(), rule.when)
