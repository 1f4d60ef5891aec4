"""
Tests for the Event System (Observer Pattern)

Tests the dispatcher, payload serialization and the notification event
factories.
"""

import pytest
from datetime import datetime, date
from decimal import Decimal
from unittest.mock import Mock

from emi_engine.events import (
    DomainEvent, EventPayload, EventDispatcher, EventPublisherMixin,
    create_emi_reminder_event, create_overdue_event, create_loan_event
)
from emi_engine.models import Installment, LoanStatus, create_loan


def _installment(**overrides):
    now = datetime(2024, 1, 1)
    params = dict(
        id="inst-1",
        created_at=now,
        updated_at=now,
        loan_id="loan-1",
        installment_number=3,
        due_date=date(2024, 4, 1),
        principal_component=Decimal('966.21'),
        interest_component=Decimal('99.98'),
        emi_amount=Decimal('1066.19'),
        outstanding_principal=Decimal('9031.41'),
        penalty_amount=Decimal('0.58')
    )
    params.update(overrides)
    return Installment(**params)


class TestEventPayload:
    """Test EventPayload creation and serialization"""

    def test_event_payload_creation(self):
        event = EventPayload(
            event_type=DomainEvent.EMI_REMINDER,
            entity_type="installment",
            entity_id="inst-1",
            data={"amount": "1066.19"}
        )

        assert event.event_type == DomainEvent.EMI_REMINDER
        assert isinstance(event.timestamp, datetime)
        assert len(event.event_id) > 0

    def test_event_payload_serialization(self):
        original = EventPayload(
            event_type=DomainEvent.LOAN_COMPLETED,
            entity_type="loan",
            entity_id="loan-1",
            data={"remaining_balance": "0.00"}
        )

        event_dict = original.to_dict()
        assert event_dict['event_type'] == "loan.completed"

        restored = EventPayload.from_dict(event_dict)
        assert restored.event_type == original.event_type
        assert restored.entity_id == original.entity_id
        assert restored.timestamp == original.timestamp
        assert restored.event_id == original.event_id


class TestEventDispatcher:
    """Test the publish/subscribe dispatcher"""

    def test_subscribe_and_publish(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.EMI_REMINDER, handler)

        event = create_emi_reminder_event(_installment())
        dispatcher.publish(event)

        handler.assert_called_once_with(event)

    def test_handlers_only_receive_their_type(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.LOAN_DEFAULTED, handler)

        dispatcher.publish(create_emi_reminder_event(_installment()))
        handler.assert_not_called()

    def test_global_handler(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe_all(handler)

        dispatcher.publish(create_emi_reminder_event(_installment()))
        dispatcher.publish(create_overdue_event(_installment()))
        assert handler.call_count == 2

    def test_failing_handler_is_isolated(self):
        """A handler error never reaches the publisher or other handlers"""
        dispatcher = EventDispatcher()
        failing = Mock(side_effect=RuntimeError("notification service down"))
        healthy = Mock()
        dispatcher.subscribe(DomainEvent.EMI_REMINDER, failing)
        dispatcher.subscribe(DomainEvent.EMI_REMINDER, healthy)

        dispatcher.publish(create_emi_reminder_event(_installment()))

        failing.assert_called_once()
        healthy.assert_called_once()

    def test_unsubscribe(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe(DomainEvent.EMI_REMINDER, handler)
        dispatcher.unsubscribe(DomainEvent.EMI_REMINDER, handler)

        dispatcher.publish(create_emi_reminder_event(_installment()))
        handler.assert_not_called()

        # Unsubscribing twice is harmless
        dispatcher.unsubscribe(DomainEvent.EMI_REMINDER, handler)

    def test_handler_counts_and_clear(self):
        dispatcher = EventDispatcher()
        dispatcher.subscribe(DomainEvent.EMI_REMINDER, Mock())
        dispatcher.subscribe(DomainEvent.PAYMENT_OVERDUE, Mock())
        dispatcher.subscribe_all(Mock())

        assert dispatcher.get_handler_count(DomainEvent.EMI_REMINDER) == 1
        assert dispatcher.get_handler_count() == 3

        dispatcher.clear()
        assert dispatcher.get_handler_count() == 0

    def test_publisher_mixin_without_dispatcher(self):
        publisher = EventPublisherMixin()
        publisher.publish(create_emi_reminder_event(_installment()))
        with publisher.deferred_events():
            publisher.publish(create_overdue_event(_installment()))

    def test_deferred_events_published_on_exit(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe_all(handler)
        reminder = create_emi_reminder_event(_installment())
        overdue = create_overdue_event(_installment())

        with dispatcher.deferred():
            dispatcher.publish(reminder)
            with dispatcher.deferred():
                dispatcher.publish(overdue)
            handler.assert_not_called()

        assert [c.args[0] for c in handler.call_args_list] == [reminder, overdue]

    def test_deferred_events_discarded_on_error(self):
        dispatcher = EventDispatcher()
        handler = Mock()
        dispatcher.subscribe_all(handler)

        with pytest.raises(RuntimeError):
            with dispatcher.deferred():
                dispatcher.publish(create_emi_reminder_event(_installment()))
                raise RuntimeError("rolled back")

        handler.assert_not_called()
        dispatcher.publish(create_emi_reminder_event(_installment()))
        handler.assert_called_once()


class TestEventFactories:
    """Test the notification event constructors"""

    def test_reminder_event(self):
        event = create_emi_reminder_event(_installment())

        assert event.entity_type == "installment"
        assert event.entity_id == "inst-1"
        assert event.data == {
            "loan_id": "loan-1",
            "installment_number": 3,
            "amount": "1066.19",
            "due_date": "2024-04-01"
        }

    def test_overdue_event_carries_penalty(self):
        event = create_overdue_event(_installment())
        assert event.event_type == DomainEvent.PAYMENT_OVERDUE
        assert event.data["penalty"] == "0.58"

    def test_loan_event(self):
        loan = create_loan(borrower_id="b-1", principal="1000", annual_rate="10", term_months=6)
        loan.status = LoanStatus.COMPLETED
        loan.remaining_balance = Decimal('0')

        event = create_loan_event(DomainEvent.LOAN_COMPLETED, loan)

        assert event.entity_type == "loan"
        assert event.data["loan_id"] == loan.id
        assert event.data["borrower_id"] == "b-1"
        assert event.data["status"] == "completed"
        assert event.data["remaining_balance"] == "0.00"
