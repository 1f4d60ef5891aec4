"""
Installment Schedule Module

Turns a loan's terms into its dated installment schedule, and answers the
read-side questions about a schedule (next pending EMI, outstanding amount,
accrued penalties). EMI previews run through the same strategies without
touching the repository.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone, date
from decimal import Decimal
from typing import List, Optional
import uuid

from .dates import add_months
from .events import EventDispatcher, EventPublisherMixin, DomainEvent, create_loan_event
from .exceptions import AlreadyScheduledError, InvalidStateError, NotFoundError
from .locking import LoanLockRegistry
from .logging_config import get_logger, log_action
from .models import Loan, Installment, LoanStatus, InstallmentStatus, EmiType
from .money import Numeric, ZERO, round_money, money_str
from .repository import LoanRepository
from .strategies import ScheduleLine, get_strategy
from . import calculator


logger = get_logger("emi_engine.schedule")


@dataclass
class EmiQuote:
    """Non-persisted EMI calculation for a prospective loan"""
    principal: Decimal
    annual_rate: Decimal
    term_months: int
    emi_type: EmiType
    monthly_emi: Decimal
    total_interest: Decimal
    total_payable: Decimal
    lines: List[ScheduleLine] = field(default_factory=list)


class ScheduleGenerator(EventPublisherMixin):
    """
    Generates and queries installment schedules
    """

    def __init__(
        self,
        repository: LoanRepository,
        locks: Optional[LoanLockRegistry] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.repository = repository
        self.locks = locks or LoanLockRegistry()
        self.set_event_dispatcher(event_dispatcher)

    def generate_schedule(self, loan: Loan) -> List[Installment]:
        """
        Generate and persist the installment schedule for a loan

        The loan is activated and saved together with its installments in one
        unit of work.

        Args:
            loan: Loan without a schedule, in PENDING (or ACTIVE) status

        Returns:
            Installments ordered by installment number

        Raises:
            AlreadyScheduledError: If the loan already has installments
            InvalidStateError: If the loan is completed, cancelled or defaulted
            InvalidArgumentError: If the loan terms are invalid
        """
        with self.locks.hold(loan.id):
            stored = self.repository.load_loan(loan.id)
            if loan.is_scheduled or (stored is not None and stored.is_scheduled):
                raise AlreadyScheduledError(loan.id)

            # The committed record wins over a stale caller copy
            current = stored if stored is not None else loan
            if current.status not in (LoanStatus.PENDING, LoanStatus.ACTIVE):
                raise InvalidStateError(
                    f"Cannot generate a schedule for loan {loan.id} in {current.status.value} status",
                    loan.id
                )

            strategy = get_strategy(loan.emi_type)
            lines = strategy.build_lines(loan.principal, loan.annual_rate, loan.term_months)

            start = loan.start_date or date.today()
            now = datetime.now(timezone.utc)

            installments = []
            for line in lines:
                installments.append(Installment(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    installment_number=line.installment_number,
                    due_date=add_months(start, line.installment_number),
                    principal_component=line.principal_component,
                    interest_component=line.interest_component,
                    emi_amount=line.emi_amount,
                    outstanding_principal=line.outstanding_principal,
                    status=InstallmentStatus.PENDING
                ))

            loan.monthly_payment = strategy.emi(loan.principal, loan.annual_rate, loan.term_months)
            loan.total_interest = strategy.total_interest(loan.principal, loan.annual_rate, loan.term_months)
            loan.start_date = start
            loan.end_date = add_months(start, loan.term_months)
            loan.remaining_balance = round_money(loan.principal)
            loan.installment_ids = [installment.id for installment in installments]
            loan.status = LoanStatus.ACTIVE
            loan.touch()

            with self.repository.atomic():
                self.repository.save_installments(installments)
                self.repository.save_loan(loan)

        log_action(
            logger, "info",
            f"Generated {len(installments)} installments for loan {loan.id}",
            action="schedule.generate",
            resource=f"loan:{loan.id}",
            loan_id=loan.id,
            extra={
                "emi_type": loan.emi_type.value,
                "monthly_payment": money_str(loan.monthly_payment),
                "total_interest": money_str(loan.total_interest)
            }
        )

        self.publish(create_loan_event(
            DomainEvent.SCHEDULE_GENERATED,
            loan,
            installment_count=len(installments),
            monthly_payment=money_str(loan.monthly_payment),
            end_date=loan.end_date.isoformat()
        ))

        return installments

    def preview(
        self,
        principal: Numeric,
        annual_rate: Numeric,
        term_months: int,
        emi_type: EmiType = EmiType.REDUCING_BALANCE,
        start_date: Optional[date] = None
    ) -> EmiQuote:
        """
        Quote the EMI and breakdown for prospective terms without saving anything

        Lines carry due dates only when a start date is given.
        """
        principal, annual_rate, term_months = calculator.validate_loan_terms(
            principal, annual_rate, term_months
        )
        strategy = get_strategy(emi_type)
        lines = strategy.build_lines(principal, annual_rate, term_months)
        if start_date is not None:
            lines = [
                replace(line, due_date=add_months(start_date, line.installment_number))
                for line in lines
            ]

        total_interest = strategy.total_interest(principal, annual_rate, term_months)
        return EmiQuote(
            principal=principal,
            annual_rate=annual_rate,
            term_months=term_months,
            emi_type=strategy.emi_type,
            monthly_emi=strategy.emi(principal, annual_rate, term_months),
            total_interest=total_interest,
            total_payable=round_money(principal + total_interest),
            lines=lines
        )

    def get_schedule(self, loan_id: str) -> List[Installment]:
        """Installments of a loan ordered by installment number"""
        self._require_loan(loan_id)
        return self.repository.load_installments(loan_id)

    def get_next_pending(self, loan_id: str) -> Optional[Installment]:
        """Lowest-numbered installment still in PENDING status, if any"""
        for installment in self.get_schedule(loan_id):
            if installment.status == InstallmentStatus.PENDING:
                return installment
        return None

    def get_total_outstanding(self, loan_id: str) -> Decimal:
        """Amount still owed across unsettled installments, penalties included"""
        total = ZERO
        for installment in self.get_schedule(loan_id):
            if not installment.is_settled:
                total += installment.remaining_amount()
        return round_money(total)

    def get_total_penalties(self, loan_id: str) -> Decimal:
        """Penalties currently accrued across all installments of a loan"""
        total = sum((i.penalty_amount for i in self.get_schedule(loan_id)), ZERO)
        return round_money(total)

    def _require_loan(self, loan_id: str) -> Loan:
        loan = self.repository.load_loan(loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return loan
