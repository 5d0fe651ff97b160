"""Domain events emitted after reservation transitions commit, and a small in-process bus."""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Type
import logging
import threading

from models import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DomainEvent:
    organization_id: str
    reservation_id: Optional[str]
    episode_id: Optional[str]
    show_id: Optional[str]
    actor_id: str
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self):
        payload = {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in asdict(self).items()
        }
        payload["event"] = self.name
        return payload


@dataclass(frozen=True)
class HoldCreated(DomainEvent):
    placement_type: str = ""
    order_id: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class HoldApproved(DomainEvent):
    order_id: Optional[str] = None


@dataclass(frozen=True)
class HoldRejected(DomainEvent):
    order_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class HoldExpired(DomainEvent):
    order_id: Optional[str] = None


@dataclass(frozen=True)
class OrderFullyApproved(DomainEvent):
    order_id: Optional[str] = None


Handler = Callable[[DomainEvent], None]


class EventBus:
    """Synchronous publish/subscribe for notification and activity-log collaborators.

    Publishing happens after the owning transaction has committed, so a failing subscriber
    is logged and skipped rather than undoing the transition it is being told about.
    """

    def __init__(self):
        self._handlers: Dict[Type[DomainEvent], List[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[DomainEvent], handler: Handler) -> None:
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def subscribe_all(self, handler: Handler) -> None:
        self.subscribe(DomainEvent, handler)

    def publish(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            with self._lock:
                handlers = [
                    handler
                    for event_type, registered in self._handlers.items()
                    if isinstance(event, event_type)
                    for handler in registered
                ]
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    logger.exception(f"Event handler failed for {event.name} ({event.reservation_id})")


def log_event(event: DomainEvent) -> None:
    """Default subscriber: record every event in the service log."""
    logger.info(f"{event.name}: reservation={event.reservation_id} episode={event.episode_id} actor={event.actor_id}")
