"""
Event sinks for lifecycle and auto-revoke notifications.

Publishing is fire-and-forget: a sink that raises never rolls back a
committed transition. Callers go through `publish_safely`, which logs and
swallows sink errors after the state change is already durable.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class EventKind:
    PERMISSION_CREATED = "permission.created"
    PERMISSION_GRANTED = "permission.granted"
    PERMISSION_REVOKED = "permission.revoked"
    PERMISSION_EXPIRED = "permission.expired"
    PERMISSION_MODIFIED = "permission.modified"
    PERMISSION_ESCALATED = "permission.escalated"
    AUTO_REVOKE_TRIGGERED = "auto_revoke.triggered"


class EventSink(ABC):
    @abstractmethod
    def publish(self, kind: str, payload: dict[str, Any]) -> None:
        ...


class LoggingEventSink(EventSink):
    """Writes every event to the module logger. The default sink."""

    def publish(self, kind: str, payload: dict[str, Any]) -> None:
        logger.info("Event %s: %s", kind, payload)


class RecordingEventSink(EventSink):
    """Keeps published events in memory, in publish order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[tuple[str, dict[str, Any]]] = []

    def publish(self, kind: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.events.append((kind, payload))

    def kinds(self) -> list[str]:
        with self._lock:
            return [kind for kind, _ in self.events]


def publish_safely(sink: EventSink | None, kind: str, payload: dict[str, Any]) -> None:
    if sink is None:
        return
    try:
        sink.publish(kind, payload)
    except Exception:
        logger.exception("Event sink %s failed to publish %s", type(sink).__name__, kind)
