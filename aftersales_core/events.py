"""Domain events published after a unit commits."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, ClassVar, Iterable, Optional

import aiohttp

from .config import NotificationSettings
from .enums import CaseAction, CaseState
from .logger import get_logger
from .models import CaseRecord
from .utils.timestamps import to_iso, utcnow

if TYPE_CHECKING:
    from .collaborators import EventSink
    from .workflow import TransitionResult

logger = get_logger()


@dataclass(frozen=True)
class DomainEvent:
    name: ClassVar[str] = "domain_event"

    case_id: int
    reference_number: str
    previous_state: Optional[CaseState] = None
    next_state: Optional[CaseState] = None
    action: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["event"] = self.name
        payload["previous_state"] = self.previous_state.value if self.previous_state else None
        payload["next_state"] = self.next_state.value if self.next_state else None
        payload["occurred_at"] = to_iso(self.occurred_at)
        return payload


@dataclass(frozen=True)
class CaseCreated(DomainEvent):
    name: ClassVar[str] = "case_created"


@dataclass(frozen=True)
class StatusChanged(DomainEvent):
    name: ClassVar[str] = "status_changed"


@dataclass(frozen=True)
class ProcessingStarted(DomainEvent):
    name: ClassVar[str] = "processing_started"


@dataclass(frozen=True)
class CaseCompleted(DomainEvent):
    name: ClassVar[str] = "completed"


@dataclass(frozen=True)
class CaseCancelled(DomainEvent):
    name: ClassVar[str] = "cancelled"


def state_change_events(
    case: CaseRecord,
    previous_state: CaseState,
    action: str | None,
    context: dict[str, Any] | None = None,
) -> list[DomainEvent]:
    """Events describing a move from previous_state to the case's current state."""
    if previous_state == case.state:
        return []

    kwargs = {
        "case_id": case.id,
        "reference_number": case.reference_number,
        "previous_state": previous_state,
        "next_state": case.state,
        "action": action,
        "context": dict(context or {}),
    }
    events: list[DomainEvent] = [StatusChanged(**kwargs)]
    if action == CaseAction.START_PROCESSING.value or (
        previous_state == CaseState.APPROVED and not case.state.is_terminal
    ):
        events.append(ProcessingStarted(**kwargs))
    if case.state == CaseState.COMPLETED:
        events.append(CaseCompleted(**kwargs))
    elif case.state == CaseState.CANCELLED:
        events.append(CaseCancelled(**kwargs))
    return events


def transition_events(
    case: CaseRecord, result: "TransitionResult", context: dict[str, Any] | None = None
) -> list[DomainEvent]:
    return state_change_events(case, result.previous_state, result.action.value, context)


class EventDispatcher:
    """Fans events out to sinks. Sink failures are logged, never raised."""

    def __init__(self, sinks: Iterable["EventSink"] = ()) -> None:
        self._sinks: list["EventSink"] = list(sinks)

    def add_sink(self, sink: "EventSink") -> None:
        self._sinks.append(sink)

    async def publish(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            for sink in self._sinks:
                try:
                    await sink.publish(event)
                except Exception as e:
                    logger.warning(
                        f"Failed to publish {event.name} for case {event.reference_number} "
                        f"to {type(sink).__name__}: {e}",
                        exc_info=True,
                    )


class InMemoryEventSink:
    """Keeps published events in a list."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    async def publish(self, event: DomainEvent) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [event.name for event in self.events]


class WebhookEventSink:
    """Posts each event as JSON to an HTTP endpoint."""

    def __init__(self, url: str, timeout_seconds: float = 10.0, headers: dict[str, str] | None = None) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.headers = dict(headers or {})

    @classmethod
    def from_settings(cls, settings: NotificationSettings) -> Optional["WebhookEventSink"]:
        if not settings.webhook_url:
            return None
        return cls(settings.webhook_url, settings.timeout_seconds, settings.headers)

    async def publish(self, event: DomainEvent) -> None:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.url, json=event.to_payload(), headers=self.headers) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise RuntimeError(
                        f"Webhook {self.url} rejected {event.name}: HTTP {response.status} {body[:200]}"
                    )
                logger.debug(f"Delivered {event.name} for case {event.reference_number} to {self.url}")
