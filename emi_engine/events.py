"""
Event System Module

Publish/subscribe dispatcher through which the engine hands logical
notification events (reminders, overdue notices, completion) to the host's
notification collaborator. Events are published only after the ledger state
they describe has been committed.
"""

from enum import Enum
from typing import Callable, Dict, List, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import uuid
import logging
from contextlib import contextmanager, nullcontext
from threading import RLock, local

from .money import money_str


class DomainEvent(Enum):
    """Domain events emitted by the engine"""

    # Schedule events
    SCHEDULE_GENERATED = "schedule.generated"

    # Installment events
    EMI_REMINDER = "installment.reminder"
    EMI_DUE_TODAY = "installment.due_today"
    PAYMENT_OVERDUE = "installment.overdue"
    INSTALLMENT_PAID = "installment.paid"

    # Loan events
    LOAN_COMPLETED = "loan.completed"
    LOAN_DEFAULTED = "loan.defaulted"


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


def _handler_name(handler: Callable) -> str:
    return getattr(handler, "__name__", repr(handler))


class EventDispatcher:
    """Central event dispatcher, publish/subscribe pattern"""

    def __init__(self):
        self._handlers: Dict[DomainEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []  # catch-all handlers
        self._lock = RLock()
        self._local = local()  # per-thread deferred event buffer
        self.logger = logging.getLogger("emi_engine.events")

    def subscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {_handler_name(handler)} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)
            self.logger.debug(f"Subscribed global handler {_handler_name(handler)}")

    def unsubscribe(self, event_type: DomainEvent, handler: Callable) -> None:
        """Unsubscribe from a specific event type"""
        with self._lock:
            try:
                self._handlers.get(event_type, []).remove(handler)
            except ValueError:
                self.logger.warning(f"Handler {_handler_name(handler)} was not subscribed to {event_type.value}")

    @contextmanager
    def deferred(self):
        """
        Hold events published by the current thread until the block exits

        On normal exit the held events are published in order; if the block
        raises they are discarded. Nested blocks defer to the outermost one.
        """
        if getattr(self._local, "buffer", None) is not None:
            yield
            return

        self._local.buffer = []
        try:
            yield
        except BaseException:
            self._local.buffer = None
            raise

        held, self._local.buffer = self._local.buffer, None
        for event in held:
            self.publish(event)

    def publish(self, event: EventPayload) -> None:
        """Publish event to all subscribers"""
        buffer = getattr(self._local, "buffer", None)
        if buffer is not None:
            buffer.append(event)
            return

        with self._lock:
            handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)

        self.logger.debug(f"Publishing event {event.event_type.value} for {event.entity_type}:{event.entity_id}")

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # Fire-and-forget: a failing handler never reaches the ledger
                self.logger.error(f"Error in event handler {_handler_name(handler)} for {event.event_type.value}: {e}")

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
    """Mixin to add event publishing capabilities to engine components"""

    _event_dispatcher: Optional[EventDispatcher] = None

    def set_event_dispatcher(self, event_dispatcher: Optional[EventDispatcher]) -> None:
        """Set the event dispatcher for this instance"""
        self._event_dispatcher = event_dispatcher

    def publish(self, event: EventPayload) -> None:
        """Publish an event if a dispatcher is attached"""
        if self._event_dispatcher is not None:
            self._event_dispatcher.publish(event)

    def deferred_events(self):
        """Defer this instance's events on the current thread (see EventDispatcher.deferred)"""
        if self._event_dispatcher is None:
            return nullcontext()
        return self._event_dispatcher.deferred()


# Convenience constructors for the notification events

def _installment_event(event_type: DomainEvent, installment, **extra) -> EventPayload:
    data = {
        "loan_id": installment.loan_id,
        "installment_number": installment.installment_number,
        "amount": money_str(installment.emi_amount),
        "due_date": installment.due_date.isoformat()
    }
    data.update(extra)
    return EventPayload(
        event_type=event_type,
        entity_type="installment",
        entity_id=installment.id,
        data=data
    )


def create_emi_reminder_event(installment) -> EventPayload:
    """EmiReminder(loan_id, installment_number, amount, due_date)"""
    return _installment_event(DomainEvent.EMI_REMINDER, installment)


def create_due_today_event(installment) -> EventPayload:
    """EmiDueToday(loan_id, installment_number, amount, due_date)"""
    return _installment_event(DomainEvent.EMI_DUE_TODAY, installment)


def create_overdue_event(installment) -> EventPayload:
    """PaymentOverdue(loan_id, installment_number, amount, penalty)"""
    return _installment_event(
        DomainEvent.PAYMENT_OVERDUE,
        installment,
        penalty=money_str(installment.penalty_amount)
    )


def create_installment_paid_event(installment) -> EventPayload:
    return _installment_event(
        DomainEvent.INSTALLMENT_PAID,
        installment,
        amount_paid=money_str(installment.amount_paid),
        paid_date=installment.paid_date.isoformat() if installment.paid_date else None
    )


def create_loan_event(event_type: DomainEvent, loan, **extra) -> EventPayload:
    """Create a loan-related event (LoanCompleted, LoanDefaulted, ScheduleGenerated)"""
    data = {
        "loan_id": loan.id,
        "borrower_id": loan.borrower_id,
        "status": loan.status.value,
        "remaining_balance": money_str(loan.remaining_balance) if loan.remaining_balance is not None else None
    }
    data.update(extra)
    return EventPayload(
        event_type=event_type,
        entity_type="loan",
        entity_id=loan.id,
        data=data
    )
