"""Router configuration.

Two layers of configuration are defined here:

- RouterSettings: process-level settings read from environment variables
  with the ROUTER_ prefix (tokens, endpoints, file locations).
- RoutingConfig: the declarative routing file (YAML) holding rules,
  defaults, LLM parameters, duplicate-detection, usage and priority
  settings.

The routing file may carry environment sections (development, staging,
production) that are deep-merged over the base document when selected.
A handful of environment variables override individual values after the
file is loaded. Any problem with the file raises ConfigError at startup;
nothing is silently defaulted.
"""

import os
import re
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.routing.models import Priority


logger = structlog.get_logger()


ENVIRONMENT_SECTIONS = ("development", "staging", "production")


class ConfigError(Exception):
    """Raised when the routing configuration cannot be loaded or is invalid."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(message)


class RouterSettings(BaseSettings):
    """Router process configuration from environment variables.

    All environment variables are prefixed with ROUTER_ (e.g., ROUTER_GITHUB_TOKEN).

    Required fields (must be set via environment variables):
    - github_token: GitHub API token for creating and updating issues
    """

    model_config = SettingsConfigDict(
        env_prefix="ROUTER_",
        case_sensitive=False,
        extra="ignore",
    )

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    github_token: str

    # Base URL for GitHub API (supports GitHub Enterprise)
    github_base_url: str = "https://api.github.com"

    # -------------------------------------------------------------------------
    # LLM Configuration
    # -------------------------------------------------------------------------
    # OpenAI-compatible endpoint used by the classifier
    llm_url: str = "https://api.openai.com/v1"

    llm_api_key: str = "not-needed"

    # Caller-level timeout wrapped around each classification call
    llm_timeout_seconds: float = 60.0

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------
    config_path: str = "config/routing.yml"

    # Optional environment section of the routing file to merge
    environment: Optional[str] = None

    # Directory holding the usage and duplicate ledgers
    data_dir: str = "data"

    # -------------------------------------------------------------------------
    # Behaviour
    # -------------------------------------------------------------------------
    dry_run: bool = False

    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("github_token")
    @classmethod
    def validate_github_token(cls, v: str) -> str:
        """Validate that GitHub token is not empty."""
        if not v or not v.strip():
            raise ValueError("github_token cannot be empty")
        return v

    @field_validator("llm_url")
    @classmethod
    def validate_llm_url(cls, v: str) -> str:
        """Validate that LLM URL is a valid URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("llm_url must start with http:// or https://")
        return v

    @field_validator("llm_timeout_seconds")
    @classmethod
    def validate_llm_timeout(cls, v: float) -> float:
        """Validate that the classifier timeout is positive."""
        if v <= 0:
            raise ValueError("llm_timeout_seconds must be positive")
        return v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: Optional[str]) -> Optional[str]:
        """Validate that the environment names a known override section."""
        if v is not None and v not in ENVIRONMENT_SECTIONS:
            raise ValueError(
                f"environment must be one of {', '.join(ENVIRONMENT_SECTIONS)}"
            )
        return v

    @property
    def history_file(self) -> Path:
        """Path of the duplicate-detection ledger."""
        return Path(self.data_dir) / "processing-history.json"

    @property
    def usage_file(self) -> Path:
        """Path of the usage ledger."""
        return Path(self.data_dir) / "api-usage.json"


def get_settings() -> RouterSettings:
    """Create and return a RouterSettings instance.

    Returns:
        RouterSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return RouterSettings()


# -----------------------------------------------------------------------------
# Routing file models
# -----------------------------------------------------------------------------


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RuleCondition(_StrictModel):
    """Predicate half of a routing rule.

    Every populated group must be satisfied for the rule to match. Within a
    group, any single entry matching is enough.
    """

    keywords: List[str] = Field(default_factory=list)
    title_patterns: List[str] = Field(default_factory=list)
    body_patterns: List[str] = Field(default_factory=list)
    labels: List[str] = Field(default_factory=list)
    channels: List[str] = Field(default_factory=list)

    @field_validator("title_patterns", "body_patterns")
    @classmethod
    def validate_patterns(cls, v: List[str]) -> List[str]:
        """Reject regular expressions that do not compile."""
        for pattern in v:
            try:
                re.compile(pattern, re.IGNORECASE)
            except re.error as e:
                raise ValueError(f"invalid pattern {pattern!r}: {e}")
        return v

    @property
    def is_empty(self) -> bool:
        """True when no predicate group is populated."""
        return not (
            self.keywords
            or self.title_patterns
            or self.body_patterns
            or self.labels
            or self.channels
        )

    def describe(self) -> Dict[str, List[str]]:
        """Return only the populated predicate groups."""
        return self.model_dump(exclude_defaults=True)


class RuleRoute(_StrictModel):
    """Destination half of a routing rule."""

    repo: str
    labels: List[str] = Field(default_factory=list)
    assignees: List[str] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    project_fields: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("repo")
    @classmethod
    def validate_repo(cls, v: str) -> str:
        """Validate the destination is owner/repo shaped."""
        return _validate_repo_name(v)


class RoutingRule(_StrictModel):
    """A static routing rule: a predicate paired with a route."""

    name: Optional[str] = None
    when: RuleCondition
    route: RuleRoute

    @model_validator(mode="after")
    def validate_when_not_empty(self) -> "RoutingRule":
        """A rule with no predicates would match every issue."""
        if self.when.is_empty:
            raise ValueError("rule 'when' must specify at least one predicate")
        return self


class ProjectRef(_StrictModel):
    """Destination project board (GitHub Projects v2)."""

    org: str
    number: int = Field(..., ge=1)


class DefaultsConfig(_StrictModel):
    """Default destination used when rules and classifier give no answer."""

    repo: str
    labels: List[str] = Field(default_factory=list)
    project: Optional[ProjectRef] = None

    @field_validator("repo")
    @classmethod
    def validate_repo(cls, v: str) -> str:
        """Validate the default destination is owner/repo shaped."""
        return _validate_repo_name(v)


class LLMConfig(_StrictModel):
    """Classifier model parameters."""

    model: str = "claude-3-sonnet"
    max_tokens: int = Field(default=4000, ge=1)
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)


class DuplicateDetectionConfig(_StrictModel):
    """Duplicate ledger settings."""

    enabled: bool = True
    lookback_days: int = Field(default=60, ge=1)
    edit_threshold: float = Field(default=0.1, ge=0.0, le=1.0)
    skip_edited_within_hours: float = Field(default=24, ge=0)
    max_history_entries: int = Field(default=5000, ge=1)


class UsageLimits(_StrictModel):
    """Daily and monthly ceilings for calls, tokens and cost (USD)."""

    daily_calls: int = Field(default=100, ge=1)
    monthly_calls: int = Field(default=2000, ge=1)
    daily_tokens: int = Field(default=500_000, ge=1)
    monthly_tokens: int = Field(default=10_000_000, ge=1)
    daily_cost: float = Field(default=50.0, gt=0)
    monthly_cost: float = Field(default=1000.0, gt=0)


class UsagePricing(_StrictModel):
    """Per-1K-token pricing for the metered model."""

    model: str = "claude-4-sonnet-20250514"
    input_cost_per_1k: float = Field(default=0.003, ge=0)
    output_cost_per_1k: float = Field(default=0.015, ge=0)


class ThresholdPair(_StrictModel):
    """Daily and monthly usage fractions."""

    daily: float = Field(..., gt=0, le=1.0)
    monthly: float = Field(..., gt=0, le=1.0)


class UsageConfig(_StrictModel):
    """Usage meter settings."""

    limits: UsageLimits = Field(default_factory=UsageLimits)
    pricing: UsagePricing = Field(default_factory=UsagePricing)
    warning_thresholds: ThresholdPair = Field(
        default_factory=lambda: ThresholdPair(daily=0.8, monthly=0.8)
    )
    emergency_thresholds: ThresholdPair = Field(
        default_factory=lambda: ThresholdPair(daily=0.95, monthly=0.9)
    )


class DeferralThresholds(_StrictModel):
    """Daily usage fractions that switch the priority processor's behaviour."""

    api_usage_percentage: float = Field(default=0.8, gt=0, le=1.0)
    emergency_only_percentage: float = Field(default=0.95, gt=0, le=1.0)


class BatchProcessingConfig(_StrictModel):
    """Batching of similar medium-priority issues."""

    enabled: bool = True
    max_batch_size: int = Field(default=5, ge=1)
    similarity_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    batch_window_minutes: float = Field(default=30, ge=0)


class PriorityConfig(_StrictModel):
    """Keyword lists and thresholds for priority scoring."""

    emergency_keywords: List[str] = Field(
        default_factory=lambda: [
            "production down", "service down", "critical", "urgent",
            "emergency", "data loss", "security breach", "vulnerability",
            "crash", "down", "cannot access", "broken", "not working",
            "failed", "error",
        ]
    )
    high_priority_keywords: List[str] = Field(
        default_factory=lambda: [
            "bug", "issue", "problem", "broken", "not working", "performance",
            "slow", "timeout", "freeze", "hang", "memory leak",
        ]
    )
    low_priority_keywords: List[str] = Field(
        default_factory=lambda: [
            "enhancement", "feature request", "improvement", "suggestion",
            "documentation", "cleanup", "refactor", "style", "typo",
        ]
    )
    production_repos: List[str] = Field(
        default_factory=lambda: [
            "myprojects-ios", "100-days-workout-ios", "delaxpm-web",
        ]
    )
    critical_labels: List[str] = Field(
        default_factory=lambda: [
            "critical", "urgent", "security", "data-loss", "production-issue",
        ]
    )
    deferral_thresholds: DeferralThresholds = Field(default_factory=DeferralThresholds)
    batch_processing: BatchProcessingConfig = Field(default_factory=BatchProcessingConfig)

    @model_validator(mode="after")
    def validate_threshold_order(self) -> "PriorityConfig":
        """The emergency-only threshold cannot sit below the deferral threshold."""
        thresholds = self.deferral_thresholds
        if thresholds.emergency_only_percentage < thresholds.api_usage_percentage:
            raise ValueError(
                "emergency_only_percentage must be >= api_usage_percentage"
            )
        return self


class RoutingConfig(_StrictModel):
    """Complete routing configuration loaded from the routing file.

    Attributes:
        defaults: Default destination, labels and project board.
        rules: Routing rules in declaration order.
        llm: Classifier model parameters.
        duplicate_detection: Duplicate ledger settings.
        usage: Usage meter settings.
        priority: Priority processor settings.
    """

    defaults: DefaultsConfig
    rules: List[RoutingRule] = Field(default_factory=list)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    duplicate_detection: DuplicateDetectionConfig = Field(
        default_factory=DuplicateDetectionConfig
    )
    usage: UsageConfig = Field(default_factory=UsageConfig)
    priority: PriorityConfig = Field(default_factory=PriorityConfig)

    def destinations(self) -> List[str]:
        """Return the default repo followed by every rule destination.

        Returns:
            Unique destinations in declaration order.
        """
        repos = [self.defaults.repo]
        for rule in self.rules:
            if rule.route.repo not in repos:
                repos.append(rule.route.repo)
        return repos

    def labels_for(self, repo: str) -> List[str]:
        """Return the labels that rules route to a destination.

        Args:
            repo: Destination repository.

        Returns:
            Unique labels in declaration order.
        """
        labels: List[str] = []
        for rule in self.rules:
            if rule.route.repo != repo:
                continue
            for label in rule.route.labels:
                if label not in labels:
                    labels.append(label)
        return labels

    def summary(self) -> Dict[str, Any]:
        """Return a short description suitable for startup logging."""
        return {
            "rules_count": len(self.rules),
            "default_repo": self.defaults.repo,
            "has_project": self.defaults.project is not None,
            "duplicate_detection": self.duplicate_detection.enabled,
        }


def _validate_repo_name(v: str) -> str:
    parts = v.split("/")
    if len(parts) != 2 or not all(p.strip() for p in parts):
        raise ValueError(f"repository must be in owner/repo form, got {v!r}")
    return v


# -----------------------------------------------------------------------------
# Loading
# -----------------------------------------------------------------------------


def deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``.

    Nested mappings are merged key by key. Any other value in ``override``
    (including lists) replaces the base value.

    Args:
        base: Base document.
        override: Values taking precedence.

    Returns:
        A new merged dictionary.
    """
    merged = deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def _apply_environment_section(
    data: Dict[str, Any],
    environment: Optional[str],
) -> Dict[str, Any]:
    sections = {name: data.pop(name) for name in ENVIRONMENT_SECTIONS if name in data}
    if environment and environment in sections:
        override = sections[environment] or {}
        if not isinstance(override, Mapping):
            raise ConfigError(f"environment section '{environment}' must be a mapping")
        data = deep_merge(data, override)
        logger.info("Applied environment overrides", environment=environment)
    return data


def _apply_env_overrides(data: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    data = deepcopy(data)
    defaults = data.setdefault("defaults", {})
    if not isinstance(defaults, dict):
        return data

    if env.get("ROUTER_DEFAULT_REPO"):
        defaults["repo"] = env["ROUTER_DEFAULT_REPO"]

    if env.get("ROUTER_PROJECT_ORG") and env.get("ROUTER_PROJECT_NUMBER"):
        defaults["project"] = {
            "org": env["ROUTER_PROJECT_ORG"],
            "number": env["ROUTER_PROJECT_NUMBER"],
        }

    llm = data.setdefault("llm", {})
    if env.get("ROUTER_LLM_MODEL"):
        llm["model"] = env["ROUTER_LLM_MODEL"]
    if env.get("ROUTER_LLM_MAX_TOKENS"):
        llm["max_tokens"] = env["ROUTER_LLM_MAX_TOKENS"]

    if env.get("ROUTER_DUPLICATE_DETECTION_ENABLED"):
        dedup = data.setdefault("duplicate_detection", {})
        dedup["enabled"] = env["ROUTER_DUPLICATE_DETECTION_ENABLED"].strip().lower() in (
            "1", "true", "yes", "on",
        )

    return data


def _format_validation_errors(error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        messages.append(f"{location}: {item['msg']}")
    return messages


def parse_routing_config(
    data: Mapping[str, Any],
    environment: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RoutingConfig:
    """Build a RoutingConfig from an already-parsed document.

    Args:
        data: Parsed routing document.
        environment: Optional environment section to merge.
        env: Environment variables for overrides (defaults to os.environ).

    Returns:
        Validated RoutingConfig.

    Raises:
        ConfigError: If the document is not a mapping or fails validation.
    """
    if not isinstance(data, Mapping):
        raise ConfigError("Routing configuration must be a mapping")

    document = _apply_environment_section(dict(data), environment)
    document = _apply_env_overrides(document, os.environ if env is None else env)

    try:
        return RoutingConfig.model_validate(document)
    except ValidationError as e:
        errors = _format_validation_errors(e)
        raise ConfigError(
            f"Invalid routing configuration: {'; '.join(errors)}",
            errors=errors,
        ) from e


def load_routing_config(
    config_path: str,
    environment: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RoutingConfig:
    """Load and validate the routing file.

    Args:
        config_path: Path to the YAML routing file.
        environment: Optional environment section to merge.
        env: Environment variables for overrides (defaults to os.environ).

    Returns:
        Validated RoutingConfig.

    Raises:
        ConfigError: If the file is missing, unparsable, empty or invalid.
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file not found: {config_path}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML: {e}") from e

    if not data:
        raise ConfigError("Configuration file is empty")

    config = parse_routing_config(data, environment=environment, env=env)
    logger.info("Routing configuration loaded", path=config_path, **config.summary())
    return config


def validate_config_file(
    config_path: str,
    environment: Optional[str] = None,
) -> Tuple[bool, List[str]]:
    """Check a routing file without raising.

    Args:
        config_path: Path to the YAML routing file.
        environment: Optional environment section to merge.

    Returns:
        Tuple of (valid, error messages).
    """
    try:
        config = load_routing_config(config_path, environment=environment)
    except ConfigError as e:
        return False, e.errors or [e.message]

    warnings = []
    if not config.rules:
        warnings.append("no routing rules defined; every issue will use the classifier")
    for message in warnings:
        logger.warning("Configuration warning", warning=message)
    return True, []
