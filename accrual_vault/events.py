"""
Event System Module

Publish/subscribe dispatcher for domain events (transfers, mints, burns, rate
changes, vault deposits and redemptions). Events raised inside an operation
are held back until the outermost operation completes, so a failed operation
never leaks a notification.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
from contextlib import contextmanager
import uuid
import logging
import threading
from threading import RLock


class DomainEvent(Enum):
    """Domain events that can occur in the vault"""

    # Rate events
    RATE_CHANGED = "rate.changed"

    # Token events
    MINT = "token.mint"
    BURN = "token.burn"
    TRANSFER = "token.transfer"
    APPROVAL = "token.approval"
    INTEREST_MATERIALIZED = "interest.materialized"

    # Vault events
    DEPOSIT = "vault.deposit"
    REDEEM = "vault.redeem"
    REWARDS_FUNDED = "vault.rewards_funded"


@dataclass
class EventPayload:
    """Payload for domain events"""
    event_type: DomainEvent
    entity_type: str
    entity_id: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        return cls(
            event_type=DomainEvent(data['event_type']),
            entity_type=data['entity_type'],
            entity_id=data['entity_id'],
            data=data['data'],
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


class EventDispatcher:
    """Central event dispatcher with deferred delivery"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self._local = threading.local()
        self.logger = logging.getLogger("accrual_vault.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {getattr(handler, '__name__', repr(handler))} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {getattr(handler, '__name__', repr(handler))} was not subscribed to {event_type.value}")

    def _scope(self):
        """Per-thread deferral state"""
        scope = self._local
        if not hasattr(scope, 'depth'):
            scope.depth = 0
            scope.pending = []
        return scope

    @contextmanager
    def deferred(self):
        """
        Hold published events until the outermost deferred block exits cleanly.

        On an exception the events queued inside the failing block are
        discarded. Deferral is tracked per thread.
        """
        scope = self._scope()
        mark = len(scope.pending)
        scope.depth += 1
        try:
            yield
        except BaseException:
            scope.depth -= 1
            del scope.pending[mark:]
            raise
        scope.depth -= 1
        if scope.depth > 0:
            return
        pending, scope.pending = scope.pending, []
        for event in pending:
            self._deliver(event)

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers (queued while inside deferred())"""
        scope = self._scope()
        if scope.depth > 0:
            scope.pending.append(event)
            return
        self._deliver(event)

    def _deliver(self, event: EventPayload) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)
        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Log but don't break the main operation
                self.logger.error(f"Error in event handler {getattr(handler, '__name__', repr(handler))} for {event.event_type.value}: {e}")

    def clear(self) -> None:
        """Clear all handlers"""
        with self._lock:
            self._handlers.clear()
            self._global_handlers.clear()

    def get_handler_count(self, event_type: Optional[DomainEvent] = None) -> int:
        """Get count of handlers for a specific event type or all"""
        with self._lock:
            if event_type:
                return len(self._handlers.get(event_type, []))
            total = sum(len(handlers) for handlers in self._handlers.values())
            return total + len(self._global_handlers)


class EventPublisherMixin:
    """Mixin to add event publishing capabilities to domain classes"""

    event_dispatcher: EventDispatcher

    def publish_event(self, event_type: DomainEvent, entity_type: str,
                      entity_id: str, data: Dict[str, Any]) -> None:
        """Publish a domain event through the instance's dispatcher"""
        self.event_dispatcher.publish(EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data
        ))
