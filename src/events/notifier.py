"""
Lifecycle event publishing for OCR documents.

One event type, tagged by :class:`EventKind`, and one routing table
mapping each kind to its topic and message-key suffix. Downstream
consumers (accounting, notifications, audit) subscribe to the topics;
the transport itself sits behind :class:`EventSink`.

Publishing is fire-and-forget: a failing sink is logged and never fails
the action that produced the event.
"""

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from src.models import utcnow
from src.utils.logger import get_logger

logger = get_logger(__name__)

PROCESSING_TOPIC = "ocr.processing.events"
DOCUMENT_TOPIC = "ocr.document.events"


class EventKind(StrEnum):
    """Kinds of lifecycle event."""

    JOB_STARTED = "job_started"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    MANUAL_REVIEW_REQUIRED = "manual_review_required"
    DATA_REVIEWED = "data_reviewed"
    DATA_APPROVED = "data_approved"
    DATA_REJECTED = "data_rejected"


# kind -> (topic, key suffix)
ROUTES: dict[EventKind, tuple[str, str]] = {
    EventKind.JOB_STARTED: (PROCESSING_TOPIC, "started"),
    EventKind.JOB_COMPLETED: (PROCESSING_TOPIC, "completed"),
    EventKind.JOB_FAILED: (PROCESSING_TOPIC, "failed"),
    EventKind.MANUAL_REVIEW_REQUIRED: (PROCESSING_TOPIC, "review-required"),
    EventKind.DATA_REVIEWED: (DOCUMENT_TOPIC, "reviewed"),
    EventKind.DATA_APPROVED: (DOCUMENT_TOPIC, "approved"),
    EventKind.DATA_REJECTED: (DOCUMENT_TOPIC, "rejected"),
}


@dataclass
class LifecycleEvent:
    """
    Event published when an OCR document changes state.

    ``payload`` carries kind-specific data such as the confidence of a
    completed job, the reason for a failure or the created record.
    """

    kind: EventKind
    ocr_id: str
    user_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str | None = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = utcnow().isoformat()

    @property
    def topic(self) -> str:
        return ROUTES[self.kind][0]

    @property
    def key(self) -> str:
        return f"ocr-job-{self.ocr_id}-{ROUTES[self.kind][1]}-{self.user_id}"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class EventSink(ABC):
    """Transport for lifecycle events."""

    @abstractmethod
    def send(self, topic: str, key: str, body: str) -> None:
        """Deliver one message; may raise on transport failure."""


class LoggingSink(EventSink):
    """Writes events to the log; the default when no broker is configured."""

    def send(self, topic: str, key: str, body: str) -> None:
        logger.info("Event %s on %s: %s", key, topic, body)


class InMemorySink(EventSink):
    """Collects messages in a list, for tests and local inspection."""

    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def send(self, topic: str, key: str, body: str) -> None:
        with self._lock:
            self.messages.append({"topic": topic, "key": key, "body": json.loads(body)})

    def kinds(self) -> list[str]:
        with self._lock:
            return [m["body"]["kind"] for m in self.messages]


class EventNotifier:
    """
    Publishes lifecycle events through a sink.

    Args:
        sink: Transport; ``None`` disables publishing.
    """

    def __init__(self, sink: EventSink | None = None):
        self.sink = sink

    def publish(
        self,
        kind: EventKind,
        ocr_id: str,
        user_id: str,
        **payload: Any,
    ) -> LifecycleEvent:
        """Build and send an event; sink errors are logged, not raised."""
        event = LifecycleEvent(kind=EventKind(kind), ocr_id=ocr_id, user_id=user_id, payload=payload)
        if self.sink is None:
            return event
        try:
            self.sink.send(event.topic, event.key, event.to_json())
        except Exception as exc:
            logger.warning("Failed to publish %s for %s: %s", event.kind.value, ocr_id, exc)
        return event
