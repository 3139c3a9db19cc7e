"""Sinks for routing events.

The router only talks to the EventEmitter interface; which sinks receive
the events is decided once at wiring time by ``create_event_emitter``.

Source:
- src/routing/events/models.py (RoutingEvent, EventType)
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional

from src.routing.events.models import EventType, RoutingEvent


logger = logging.getLogger(__name__)


# Lifecycle noise stays at DEBUG; refusals and failures stand out.
EVENT_LOG_LEVELS: Dict[EventType, int] = {
    EventType.STAGE_TRANSITION: logging.DEBUG,
    EventType.ROUTED: logging.INFO,
    EventType.DUPLICATE: logging.INFO,
    EventType.QUEUED: logging.INFO,
    EventType.BLOCKED: logging.WARNING,
    EventType.ERROR: logging.ERROR,
}


class EventSinkType(str, Enum):
    """Where routing events can be sent."""

    LOGGING = "logging"
    METRICS = "metrics"


class EventEmitter(ABC):
    """Receives routing events.

    ``emit`` is called from concurrent router invocations and must not
    raise into the router; the router guards the call regardless.
    """

    @abstractmethod
    def emit(self, event: RoutingEvent) -> None:
        """Deliver one routing event to the sink."""

    def close(self) -> None:
        """Release sink resources. Most sinks hold none."""


class LoggingEventEmitter(EventEmitter):
    """Writes each routing event as one log record.

    The level follows EVENT_LOG_LEVELS and the event fields travel in the
    record's ``extra`` so structured handlers can index them.

    Example:
        >>> LoggingEventEmitter().emit(RoutingEvent(
        ...     event_type=EventType.BLOCKED,
        ...     issue_id="org/inbox-12",
        ...     repository="org/inbox",
        ... ))
        # WARNING - Routing event: blocked for org/inbox-12
    """

    def __init__(self, logger_name: Optional[str] = None):
        self._logger = logging.getLogger(logger_name) if logger_name else logger

    def emit(self, event: RoutingEvent) -> None:
        self._logger.log(
            EVENT_LOG_LEVELS.get(event.event_type, logging.INFO),
            "Routing event: %s for %s",
            event.event_type.value,
            event.issue_id,
            extra=event.to_log_dict(),
        )


class CompositeEventEmitter(EventEmitter):
    """Fans each event out to several sinks.

    A sink that raises is logged and skipped; the remaining sinks still
    receive the event.
    """

    def __init__(self, emitters: Optional[List[EventEmitter]] = None):
        self._children: List[EventEmitter] = list(emitters or [])

    def add_emitter(self, emitter: EventEmitter) -> None:
        self._children.append(emitter)

    @property
    def emitters(self) -> List[EventEmitter]:
        """Snapshot of the child sinks."""
        return list(self._children)

    def emit(self, event: RoutingEvent) -> None:
        for child in self._children:
            try:
                child.emit(event)
            except Exception:
                logger.exception(
                    "Routing event sink failed",
                    extra={
                        "sink": type(child).__name__,
                        "event_type": event.event_type.value,
                        "issue_id": event.issue_id,
                    },
                )

    def close(self) -> None:
        for child in self._children:
            try:
                child.close()
            except Exception:
                logger.exception(
                    "Routing event sink failed to close",
                    extra={"sink": type(child).__name__},
                )


class NullEventEmitter(EventEmitter):
    """Drops every event. Used when the router is built without a sink."""

    def emit(self, event: RoutingEvent) -> None:
        return None


def create_event_emitter(
    sink_types: Optional[List[EventSinkType]] = None,
    logger_name: Optional[str] = None,
) -> EventEmitter:
    """Build the emitter for the requested sinks.

    Args:
        sink_types: Sinks to enable, in order. Logging is used when empty.
        logger_name: Logger for the logging sink.

    Returns:
        The single sink, or a CompositeEventEmitter over several.
    """
    # metrics.py imports this module
    from src.routing.events.metrics import MetricsEventEmitter

    builders = {
        EventSinkType.LOGGING: lambda: LoggingEventEmitter(logger_name=logger_name),
        EventSinkType.METRICS: MetricsEventEmitter,
    }

    sinks: List[EventEmitter] = []
    for sink_type in sink_types or [EventSinkType.LOGGING]:
        builder = builders.get(sink_type)
        if builder is None:
            logger.warning("Unknown event sink type, skipping", extra={"sink": sink_type})
            continue
        sinks.append(builder())

    if not sinks:
        return LoggingEventEmitter(logger_name=logger_name)
    if len(sinks) == 1:
        return sinks[0]
    return CompositeEventEmitter(sinks)
