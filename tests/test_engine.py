"""
Integration tests for the LoanEngine facade

Drives a loan end to end through the public inbound operations.
"""

import logging
import pytest
from decimal import Decimal
from datetime import date

from emi_engine import calculator
from emi_engine.config import EngineConfig
from emi_engine.engine import LoanEngine, create_engine
from emi_engine.events import EventDispatcher, DomainEvent
from emi_engine.exceptions import InvalidArgumentError, InvalidStateError
from emi_engine.models import EmiType, LoanStatus, InstallmentStatus
from emi_engine.repository import InMemoryLoanRepository
from emi_engine.risk import RiskLevel


@pytest.fixture
def dispatcher():
    return EventDispatcher()


@pytest.fixture
def captured(dispatcher):
    events = []
    dispatcher.subscribe_all(events.append)
    return events


@pytest.fixture
def engine(dispatcher):
    return LoanEngine(
        repository=InMemoryLoanRepository(),
        event_dispatcher=dispatcher,
        config=EngineConfig(collections_max_workers=2)
    )


class TestLoanEngine:
    """Test the facade end to end"""

    def test_full_repayment(self, engine, captured):
        loan = engine.create_loan("borrower-1", Decimal('12000'), Decimal('12'), 12, start_date=date(2024, 1, 1))
        installments = engine.generate_schedule(loan)

        for installment in installments:
            engine.record_payment(installment.id, installment.emi_amount, paid_on=installment.due_date)

        stored = engine.get_loan(loan.id)
        assert stored.status == LoanStatus.COMPLETED
        assert stored.remaining_balance == Decimal('0.00')
        assert engine.get_next_pending(loan.id) is None
        assert engine.get_total_outstanding(loan.id) == Decimal('0.00')

        event_types = [e.event_type for e in captured]
        assert event_types.count(DomainEvent.INSTALLMENT_PAID) == 12
        assert event_types.count(DomainEvent.LOAN_COMPLETED) == 1
        assert event_types[-1] == DomainEvent.LOAN_COMPLETED

    def test_create_loan_validates_terms(self, engine):
        with pytest.raises(InvalidArgumentError):
            engine.create_loan("borrower-1", Decimal('0'), Decimal('12'), 12)
        with pytest.raises(InvalidArgumentError):
            engine.create_loan("borrower-1", Decimal('1000'), Decimal('12'), 12, penalty_rate="-1")

    def test_create_loan_uses_configured_penalty_rate(self, dispatcher):
        engine = LoanEngine(config=EngineConfig(default_penalty_rate="3.50"), event_dispatcher=dispatcher)
        loan = engine.create_loan("borrower-1", Decimal('1000'), Decimal('12'), 12)
        assert loan.penalty_rate == Decimal('3.50')
        assert engine.get_loan(loan.id).status == LoanStatus.PENDING

    def test_cancel_then_schedule_rejected(self, engine):
        loan = engine.create_loan("borrower-1", Decimal('1000'), Decimal('12'), 12)
        cancelled = engine.cancel_loan(loan.id)

        with pytest.raises(InvalidStateError):
            engine.generate_schedule(cancelled)

    def test_stale_copy_of_cancelled_loan_rejected(self, engine):
        """A caller still holding the PENDING object cannot revive a cancelled loan"""
        loan = engine.create_loan("borrower-1", Decimal('1000'), Decimal('12'), 12)
        engine.cancel_loan(loan.id)
        assert loan.status == LoanStatus.PENDING

        with pytest.raises(InvalidStateError):
            engine.generate_schedule(loan)

        stored = engine.get_loan(loan.id)
        assert stored.status == LoanStatus.CANCELLED
        assert stored.installment_ids == []
        assert engine.get_schedule(loan.id) == []

    def test_collections_and_penalties(self, engine):
        loan = engine.create_loan("borrower-1", Decimal('12000'), Decimal('12'), 12, start_date=date(2024, 1, 1))
        engine.generate_schedule(loan)

        results = engine.run_daily_tasks(as_of=date(2024, 2, 11))

        assert results["overdue_sweep"].affected == 1
        assert engine.get_total_penalties(loan.id) == Decimal('0.58')
        assert engine.get_loan(loan.id).total_penalty_accrued == Decimal('0.58')
        assert engine.get_total_outstanding(loan.id) == Decimal('12794.86')

    def test_waive_installment(self, engine):
        loan = engine.create_loan("borrower-1", Decimal('12000'), Decimal('12'), 12, start_date=date(2024, 1, 1))
        installments = engine.generate_schedule(loan)
        engine.mark_overdue_with_penalty(installments[0].id, as_of=date(2024, 2, 11))

        waived = engine.waive_installment(installments[0].id)
        assert waived.status == InstallmentStatus.WAIVED
        assert engine.get_total_penalties(loan.id) == Decimal('0.00')

    def test_default_and_risk(self, engine):
        loan = engine.create_loan("borrower-1", Decimal('12000'), Decimal('12'), 12, start_date=date(2024, 1, 1))
        engine.generate_schedule(loan)

        assert engine.run_default_check(as_of=date(2024, 5, 2)).affected == 1
        assessment = engine.score_risk("borrower-1", as_of=date(2024, 5, 2))

        assert assessment.components["default_history"] == Decimal('80')
        assert assessment.components["concurrency"] == Decimal('20')
        assert assessment.level in (RiskLevel.MEDIUM, RiskLevel.HIGH)

    def test_individual_passes(self, engine):
        loan = engine.create_loan("borrower-1", Decimal('1200'), Decimal('0'), 12, start_date=date(2024, 1, 1))
        engine.generate_schedule(loan)

        assert engine.run_reminder_pass(as_of=date(2024, 1, 30)).events == 1
        assert engine.run_due_today_pass(as_of=date(2024, 2, 1)).affected == 1
        assert engine.run_overdue_sweep(as_of=date(2024, 2, 2)).affected == 1
        assert engine.get_schedule(loan.id)[0].status == InstallmentStatus.OVERDUE

    def test_preview(self, engine):
        quote = engine.preview_emi(Decimal('12000'), Decimal('12'), 12, EmiType.REDUCING_BALANCE)
        assert quote.monthly_emi == Decimal('1066.19')
        assert quote.total_interest == Decimal('794.28')


class TestCreateEngine:
    """Test the engine factory"""

    @pytest.fixture(autouse=True)
    def restore_globals(self):
        original_precision = calculator.get_precision()
        yield
        calculator.set_precision(original_precision)
        logger = logging.getLogger("emi_engine")
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
        logger.propagate = True
        logger.setLevel(logging.NOTSET)

    def test_create_engine_applies_config(self):
        engine = create_engine(EngineConfig(decimal_precision=20, log_level="WARNING", log_format="text"))

        assert isinstance(engine, LoanEngine)
        assert calculator.get_precision() == 20
        assert logging.getLogger("emi_engine").level == logging.WARNING
        assert isinstance(engine.repository, InMemoryLoanRepository)

    def test_precision_is_process_wide(self):
        """The most recently created engine sets precision for every engine"""
        first = create_engine(EngineConfig(decimal_precision=20, log_level="WARNING"))
        second = create_engine(EngineConfig(decimal_precision=15, log_level="WARNING"))

        assert first.config.decimal_precision == 20
        assert second.config.decimal_precision == 15
        assert calculator.get_precision() == 15
        assert first.preview_emi(Decimal('12000'), Decimal('12'), 12).monthly_emi == Decimal('1066.19')
