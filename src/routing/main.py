"""Command line entry point for the issue router.

Wires the routing components from process settings and the routing file,
then routes issues read from JSON files, prints the usage report, or
validates the routing file.

Usage:
    python -m src.routing.main route ISSUE.json [ISSUE.json ...] [--source-repo owner/repo]
    python -m src.routing.main usage
    python -m src.routing.main validate-config [--config PATH]
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from pydantic import ValidationError

from src.routing.classifier.agent import IssueClassifier
from src.routing.classifier.backend import LangChainBackend
from src.routing.classifier.prompts import CLASSIFIER_SYSTEM_PROMPT
from src.routing.config import (
    ConfigError,
    RouterSettings,
    RoutingConfig,
    get_settings,
    load_routing_config,
    validate_config_file,
)
from src.routing.dedup.store import DuplicateStore
from src.routing.events.emitter import EventSinkType, create_event_emitter
from src.routing.github.client import GitHubClient
from src.routing.github.projects import ProjectsClient
from src.routing.models import Issue
from src.routing.orchestrator import IssueRouter
from src.routing.priority.processor import PriorityProcessor
from src.routing.results import RoutingOutcome, RoutingResult
from src.routing.usage.meter import UsageMeter

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _redact_secret(value: str, visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: RouterSettings, config: RoutingConfig) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("Router configuration:")
    logger.info(f"  GitHub Base URL: {settings.github_base_url}")
    logger.info(f"  GitHub Token: {_redact_secret(settings.github_token)}")
    logger.info(f"  LLM URL: {settings.llm_url}")
    logger.info(f"  LLM API Key: {_redact_secret(settings.llm_api_key)}")
    logger.info(f"  LLM Model: {config.llm.model}")
    logger.info(f"  LLM Timeout Seconds: {settings.llm_timeout_seconds}")
    logger.info(f"  Config Path: {settings.config_path}")
    logger.info(f"  Environment: {settings.environment or 'base'}")
    logger.info(f"  Data Directory: {settings.data_dir}")
    logger.info(f"  Dry Run: {settings.dry_run}")
    logger.info(f"  Default Repo: {config.defaults.repo}")
    logger.info(f"  Rules: {len(config.rules)}")
    logger.info(f"  Duplicate Detection: {config.duplicate_detection.enabled}")


def build_router(
    settings: RouterSettings,
    config: RoutingConfig,
    github: Optional[GitHubClient] = None,
) -> IssueRouter:
    """Wire all routing dependencies into an IssueRouter.

    Args:
        settings: Validated process settings.
        config: Validated routing configuration.
        github: Optional pre-built GitHub client.

    Returns:
        Fully wired IssueRouter.
    """
    github = github or GitHubClient(
        token=settings.github_token,
        base_url=settings.github_base_url,
    )

    backend = LangChainBackend(
        llm_url=settings.llm_url,
        model_name=config.llm.model,
        api_key=settings.llm_api_key,
        system_prompt=CLASSIFIER_SYSTEM_PROMPT,
        timeout=settings.llm_timeout_seconds,
    )
    classifier = IssueClassifier(
        backend=backend,
        llm_config=config.llm,
        defaults=config.defaults,
        timeout=settings.llm_timeout_seconds,
    )

    projects = ProjectsClient(github) if config.defaults.project else None

    return IssueRouter(
        config=config,
        classifier=classifier,
        duplicate_store=DuplicateStore(config.duplicate_detection, settings.history_file),
        usage_meter=UsageMeter(config.usage, settings.usage_file),
        priority_processor=PriorityProcessor(config.priority),
        github=github,
        projects=projects,
        event_emitter=create_event_emitter([EventSinkType.LOGGING, EventSinkType.METRICS]),
        dry_run=settings.dry_run,
    )


def load_issue(path: str) -> Issue:
    """Read an Issue from a JSON file.

    Raises:
        ValueError: If the file is not valid JSON or not a valid issue.
    """
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"{path}: invalid JSON: {e}") from e
    try:
        return Issue.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"{path}: invalid issue: {e}") from e


def _print_result(result: RoutingResult) -> None:
    print(result.model_dump_json(indent=2))


def _route_command(args: argparse.Namespace, settings: RouterSettings) -> int:
    config = load_routing_config(settings.config_path, environment=settings.environment)
    _log_configuration(settings, config)

    issues = [load_issue(path) for path in args.issues]
    router = build_router(settings, config)
    results: List[RoutingResult] = []
    try:
        for issue in issues:
            results.append(router.route_issue(issue, source_repo=args.source_repo))
        if args.drain:
            results.extend(router.process_batch())
            results.extend(router.process_deferred())
    finally:
        router.classifier.close()
        router.github.close()

    for result in results:
        _print_result(result)

    failed = sum(1 for r in results if r.outcome == RoutingOutcome.FAILED)
    logger.info(
        "Routing complete",
        extra={"routed": len(results), "failed": failed},
    )
    return 1 if failed else 0


def _usage_command(settings: RouterSettings) -> int:
    config = load_routing_config(settings.config_path, environment=settings.environment)
    meter = UsageMeter(config.usage, settings.usage_file)
    print(meter.usage_report())
    return 0


def _validate_command(args: argparse.Namespace) -> int:
    valid, errors = validate_config_file(args.config, environment=args.environment)
    if valid:
        print(f"Configuration is valid: {args.config}")
        return 0
    print(f"Configuration is invalid: {args.config}")
    for error in errors:
        print(f"  - {error}")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="issue-router",
        description="Route issues to their destination repositories.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    route = subparsers.add_parser("route", help="Route issues read from JSON files")
    route.add_argument("issues", nargs="+", help="Issue JSON files")
    route.add_argument("--source-repo", help="Repository the issues were reported in (owner/repo)")
    route.add_argument("--dry-run", action="store_true", help="Classify without writing anything")
    route.add_argument(
        "--drain",
        action="store_true",
        help="Route queued issues released after the run",
    )

    subparsers.add_parser("usage", help="Print the API usage report")

    validate = subparsers.add_parser("validate-config", help="Validate a routing file")
    validate.add_argument("--config", default="config/routing.yml", help="Routing file path")
    validate.add_argument("--environment", help="Environment section to merge")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "validate-config":
        return _validate_command(args)

    settings = get_settings()
    if getattr(args, "dry_run", False):
        settings = settings.model_copy(update={"dry_run": True})
    logging.getLogger().setLevel(settings.log_level.upper())

    try:
        if args.command == "route":
            return _route_command(args, settings)
        return _usage_command(settings)
    except ConfigError as e:
        logger.error("Configuration error: %s", e.message)
        for error in e.errors:
            logger.error("  %s", error)
        return 2
    except (OSError, ValueError) as e:
        logger.error("%s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
