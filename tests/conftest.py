"""Pytest configuration and shared fixtures for all tests."""

from datetime import datetime, timedelta, timezone

import pytest

from src.routing.config import RoutingConfig, parse_routing_config


# A fixed instant well away from day and month boundaries
FIXED_NOW = datetime(2025, 3, 14, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Injectable ``now_fn`` whose time only moves when told to."""

    def __init__(self, start: datetime = FIXED_NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """A clock frozen at 2025-03-14 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def routing_config() -> RoutingConfig:
    """Routing configuration with one keyword rule and default settings."""
    return parse_routing_config(
        {
            "defaults": {"repo": "org/inbox", "labels": ["triage"]},
            "rules": [
                {
                    "name": "ios",
                    "when": {"keywords": ["MyProjects"]},
                    "route": {
                        "repo": "org/myprojects-ios",
                        "labels": ["ios"],
                        "priority": "high",
                    },
                },
            ],
        },
        env={},
    )
