"""
Loan Engine Facade

Wires the repository, lock registry, event dispatcher and every component
together and exposes the inbound operations a host application calls.
"""

from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from . import calculator
from .collections import CollectionsJob, JobResult
from .config import EngineConfig, get_config
from .events import EventDispatcher
from .exceptions import InvalidArgumentError
from .installments import InstallmentLifecycleManager
from .locking import LoanLockRegistry
from .logging_config import setup_logging, get_logger
from .models import Loan, Installment, EmiType, create_loan
from .money import Numeric, to_decimal
from .repository import LoanRepository, InMemoryLoanRepository
from .risk import RiskScorer, RiskAssessment
from .schedule import ScheduleGenerator, EmiQuote


logger = get_logger("emi_engine.engine")


class LoanEngine:
    """EMI engine with all components initialized"""

    def __init__(
        self,
        repository: Optional[LoanRepository] = None,
        event_dispatcher: Optional[EventDispatcher] = None,
        config: Optional[EngineConfig] = None
    ):
        self.config = config or get_config()
        self.repository = repository or InMemoryLoanRepository()
        self.event_dispatcher = event_dispatcher or EventDispatcher()
        self.locks = LoanLockRegistry()

        self.schedule_generator = ScheduleGenerator(
            self.repository, self.locks, self.event_dispatcher
        )
        self.lifecycle = InstallmentLifecycleManager(
            self.repository, self.locks, self.event_dispatcher
        )
        self.collections = CollectionsJob(
            self.repository, self.lifecycle, self.locks,
            self.event_dispatcher, self.config
        )
        self.risk_scorer = RiskScorer(self.repository)

    # Loans and schedules

    def create_loan(
        self,
        borrower_id: str,
        principal: Numeric,
        annual_rate: Numeric,
        term_months: int,
        emi_type: EmiType = EmiType.REDUCING_BALANCE,
        penalty_rate: Optional[Numeric] = None,
        lender_id: Optional[str] = None,
        start_date: Optional[date] = None,
        description: Optional[str] = None
    ) -> Loan:
        """Register a PENDING loan; its schedule is generated separately"""
        calculator.validate_loan_terms(principal, annual_rate, term_months)
        if penalty_rate is None:
            penalty_rate = to_decimal(self.config.default_penalty_rate, "default_penalty_rate")
        loan = create_loan(
            borrower_id=borrower_id,
            principal=principal,
            annual_rate=annual_rate,
            term_months=term_months,
            emi_type=emi_type,
            penalty_rate=penalty_rate,
            lender_id=lender_id,
            start_date=start_date,
            description=description
        )
        if loan.penalty_rate < 0:
            raise InvalidArgumentError(f"penalty_rate must not be negative, got {loan.penalty_rate}")
        with self.repository.atomic():
            self.repository.save_loan(loan)
        logger.info(f"Created loan {loan.id} for borrower {borrower_id}")
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        return self.repository.load_loan(loan_id)

    def generate_schedule(self, loan: Loan) -> List[Installment]:
        return self.schedule_generator.generate_schedule(loan)

    def preview_emi(
        self,
        principal: Numeric,
        annual_rate: Numeric,
        term_months: int,
        emi_type: EmiType = EmiType.REDUCING_BALANCE,
        start_date: Optional[date] = None
    ) -> EmiQuote:
        return self.schedule_generator.preview(principal, annual_rate, term_months, emi_type, start_date)

    def get_schedule(self, loan_id: str) -> List[Installment]:
        return self.schedule_generator.get_schedule(loan_id)

    def get_next_pending(self, loan_id: str) -> Optional[Installment]:
        return self.schedule_generator.get_next_pending(loan_id)

    def get_total_outstanding(self, loan_id: str) -> Decimal:
        return self.schedule_generator.get_total_outstanding(loan_id)

    def get_total_penalties(self, loan_id: str) -> Decimal:
        return self.schedule_generator.get_total_penalties(loan_id)

    # Installment lifecycle

    def record_payment(
        self,
        installment_id: str,
        amount: Numeric,
        paid_on: Optional[date] = None,
        allow_overpayment: bool = False
    ) -> Installment:
        return self.lifecycle.record_payment(installment_id, amount, paid_on, allow_overpayment)

    def mark_overdue_with_penalty(self, installment_id: str, as_of: Optional[date] = None) -> bool:
        return self.lifecycle.mark_overdue_with_penalty(installment_id, as_of)

    def waive_installment(self, installment_id: str) -> Installment:
        return self.lifecycle.waive(installment_id)

    def cancel_loan(self, loan_id: str) -> Loan:
        return self.lifecycle.cancel_loan(loan_id)

    # Collections

    def run_overdue_sweep(self, as_of: Optional[date] = None) -> JobResult:
        return self.collections.run_overdue_sweep(as_of)

    def run_reminder_pass(self, as_of: Optional[date] = None) -> JobResult:
        return self.collections.run_reminder_pass(as_of)

    def run_due_today_pass(self, as_of: Optional[date] = None) -> JobResult:
        return self.collections.run_due_today_pass(as_of)

    def run_default_check(self, as_of: Optional[date] = None) -> JobResult:
        return self.collections.run_default_check(as_of)

    def run_daily_tasks(self, as_of: Optional[date] = None) -> Dict[str, JobResult]:
        return self.collections.run_daily_tasks(as_of)

    # Risk

    def score_risk(self, borrower_id: str, as_of: Optional[date] = None) -> RiskAssessment:
        return self.risk_scorer.score(borrower_id, as_of)


def create_engine(
    config: Optional[EngineConfig] = None,
    repository: Optional[LoanRepository] = None,
    event_dispatcher: Optional[EventDispatcher] = None
) -> LoanEngine:
    """
    Factory function applying configuration before building the engine

    Decimal precision and the "emi_engine" logger are process-wide: building
    a second engine from a different config changes them for the first too.
    """
    config = config or get_config()
    calculator.set_precision(config.decimal_precision)
    setup_logging(
        level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file
    )
    return LoanEngine(repository=repository, event_dispatcher=event_dispatcher, config=config)
