"""
Installment Lifecycle Module

Drives each installment through its state machine:

    PENDING -> {DUE, OVERDUE} -> {PARTIAL -> PAID, PAID, WAIVED}

and keeps the owning loan's remaining balance, status and running penalty
total consistent with it. Every mutation runs under the loan's lock inside
one repository unit of work; events are published after the commit.
"""

from datetime import date
from typing import List, Optional

from . import calculator
from .events import (
    EventDispatcher, EventPublisherMixin, EventPayload, DomainEvent,
    create_installment_paid_event, create_overdue_event,
    create_due_today_event, create_loan_event
)
from .exceptions import InvalidArgumentError, InvalidStateError, NotFoundError
from .locking import LoanLockRegistry
from .logging_config import get_logger, log_action
from .models import Loan, Installment, LoanStatus, InstallmentStatus
from .money import Numeric, ZERO, to_decimal, round_money, floor_at_zero, money_str
from .repository import LoanRepository


logger = get_logger("emi_engine.installments")


class InstallmentLifecycleManager(EventPublisherMixin):
    """
    Applies payments, penalties, due-date transitions and waivers
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

    def record_payment(
        self,
        installment_id: str,
        amount: Numeric,
        paid_on: Optional[date] = None,
        allow_overpayment: bool = False
    ) -> Installment:
        """
        Record a payment against an installment

        Once the cumulative amount paid covers the EMI plus penalty the
        installment is PAID and its principal component is debited from the
        loan's remaining balance; a balance of zero completes the loan.
        Overpayment is accepted and not redistributed.

        Args:
            installment_id: Installment being paid
            amount: Positive payment amount
            paid_on: Payment date (defaults to today)
            allow_overpayment: Accept further money on an already PAID installment

        Returns:
            Updated installment

        Raises:
            InvalidArgumentError: If amount is not positive
            NotFoundError: If the installment or its loan does not exist
            InvalidStateError: If the installment or loan cannot take payments
        """
        amount = to_decimal(amount, "amount")
        if amount <= ZERO:
            raise InvalidArgumentError(f"Payment amount must be positive, got {amount}")
        paid_on = paid_on or date.today()

        events: List[EventPayload] = []
        loan_id = self._require_installment(installment_id).loan_id

        with self.locks.hold(loan_id):
            installment = self._require_installment(installment_id)
            loan = self._require_loan(installment.loan_id)

            if not loan.accepts_payments:
                raise InvalidStateError(
                    f"Loan {loan.id} is {loan.status.value} and does not accept payments",
                    loan.id
                )

            if installment.status == InstallmentStatus.WAIVED:
                raise InvalidStateError(
                    f"Installment {installment.id} has been waived", installment.id
                )

            if installment.status == InstallmentStatus.PAID:
                if not allow_overpayment:
                    raise InvalidStateError(
                        f"Installment {installment.id} is already paid", installment.id
                    )
                installment.amount_paid = round_money(installment.amount_paid + amount)
                installment.touch()
                with self.repository.atomic():
                    self.repository.save_installments([installment])
                logger.info(f"Accepted overpayment of {money_str(amount)} on paid installment {installment.id}")
                return installment

            installment.amount_paid = round_money(installment.amount_paid + amount)
            installment.touch()

            if installment.amount_paid >= installment.total_due():
                installment.status = InstallmentStatus.PAID
                installment.paid_date = paid_on
                completed = loan.debit_principal(installment.principal_component)

                events.append(create_installment_paid_event(installment))
                if completed:
                    events.append(create_loan_event(DomainEvent.LOAN_COMPLETED, loan))
            else:
                installment.status = InstallmentStatus.PARTIAL

            with self.repository.atomic():
                self.repository.save_installments([installment])
                if installment.status == InstallmentStatus.PAID:
                    self.repository.save_loan(loan)

        log_action(
            logger, "info",
            f"Recorded payment of {money_str(amount)} on installment "
            f"{installment.installment_number} of loan {loan.id}",
            action="installment.payment",
            resource=f"installment:{installment.id}",
            loan_id=loan.id,
            extra={
                "status": installment.status.value,
                "amount_paid": money_str(installment.amount_paid),
                "remaining_balance": money_str(loan.remaining_balance)
            }
        )
        if loan.status == LoanStatus.COMPLETED:
            logger.info(f"Loan {loan.id} completed")

        for event in events:
            self.publish(event)

        return installment

    def mark_overdue_with_penalty(self, installment_id: str, as_of: Optional[date] = None) -> bool:
        """
        Mark an installment past its due date as OVERDUE and accrue its penalty

        The penalty is recomputed from the EMI amount at the loan's penalty
        rate for the days elapsed and replaces the previous value, so repeated
        calls on the same day leave the same state. The loan's running penalty
        total moves by the difference.

        Returns:
            True if the installment changed
        """
        as_of = as_of or date.today()
        loan_id = self._require_installment(installment_id).loan_id

        with self.locks.hold(loan_id):
            installment = self._require_installment(installment_id)
            if installment.is_settled:
                return False

            days = installment.days_overdue(as_of)
            if days <= 0:
                return False

            loan = self._require_loan(installment.loan_id)
            penalty = calculator.late_payment_penalty(installment.emi_amount, loan.penalty_rate, days)
            delta = penalty - installment.penalty_amount

            if delta == ZERO and installment.status == InstallmentStatus.OVERDUE:
                return False

            installment.penalty_amount = penalty
            installment.status = InstallmentStatus.OVERDUE
            installment.touch()

            loan.total_penalty_accrued = round_money(floor_at_zero(loan.total_penalty_accrued + delta))
            loan.touch()

            with self.repository.atomic():
                self.repository.save_installments([installment])
                self.repository.save_loan(loan)

        log_action(
            logger, "info",
            f"Installment {installment.installment_number} of loan {loan.id} overdue "
            f"by {days} days, penalty {money_str(penalty)}",
            action="installment.overdue",
            resource=f"installment:{installment.id}",
            loan_id=loan.id,
            extra={"days_overdue": days, "penalty": money_str(penalty)}
        )

        self.publish(create_overdue_event(installment))
        return True

    def mark_due(self, installment_id: str, as_of: Optional[date] = None) -> bool:
        """
        Move a PENDING installment to DUE once its due date has arrived

        Returns:
            True if the installment changed
        """
        as_of = as_of or date.today()
        loan_id = self._require_installment(installment_id).loan_id

        with self.locks.hold(loan_id):
            installment = self._require_installment(installment_id)
            if installment.status != InstallmentStatus.PENDING or as_of < installment.due_date:
                return False

            installment.status = InstallmentStatus.DUE
            installment.touch()
            with self.repository.atomic():
                self.repository.save_installments([installment])

        logger.debug(f"Installment {installment.id} of loan {loan_id} is due")
        self.publish(create_due_today_event(installment))
        return True

    def waive(self, installment_id: str) -> Installment:
        """
        Write off an installment

        Any accrued penalty is cleared and removed from the loan's running
        total. The loan's remaining balance is not touched.

        Raises:
            InvalidStateError: If the installment is paid or the loan is closed
        """
        loan_id = self._require_installment(installment_id).loan_id

        with self.locks.hold(loan_id):
            installment = self._require_installment(installment_id)
            if installment.status == InstallmentStatus.WAIVED:
                return installment
            if installment.status == InstallmentStatus.PAID:
                raise InvalidStateError(
                    f"Installment {installment.id} is already paid", installment.id
                )

            loan = self._require_loan(installment.loan_id)
            if not loan.accepts_payments:
                raise InvalidStateError(
                    f"Loan {loan.id} is {loan.status.value}; installments cannot be waived",
                    loan.id
                )

            waived_penalty = installment.penalty_amount
            installment.penalty_amount = ZERO
            installment.status = InstallmentStatus.WAIVED
            installment.touch()

            loan.total_penalty_accrued = round_money(
                floor_at_zero(loan.total_penalty_accrued - waived_penalty)
            )
            loan.touch()

            with self.repository.atomic():
                self.repository.save_installments([installment])
                self.repository.save_loan(loan)

        log_action(
            logger, "info",
            f"Waived installment {installment.installment_number} of loan {loan.id}",
            action="installment.waive",
            resource=f"installment:{installment.id}",
            loan_id=loan.id,
            extra={"waived_penalty": money_str(waived_penalty)}
        )
        return installment

    def cancel_loan(self, loan_id: str) -> Loan:
        """
        Cancel a loan before activation

        Raises:
            InvalidStateError: If the loan is not PENDING
        """
        with self.locks.hold(loan_id):
            loan = self._require_loan(loan_id)
            if loan.status != LoanStatus.PENDING:
                raise InvalidStateError(
                    f"Only pending loans can be cancelled; loan {loan_id} is {loan.status.value}",
                    loan_id
                )

            loan.status = LoanStatus.CANCELLED
            loan.touch()
            with self.repository.atomic():
                self.repository.save_loan(loan)

        logger.info(f"Cancelled loan {loan_id}")
        return loan

    def _require_installment(self, installment_id: str) -> Installment:
        installment = self.repository.load_installment(installment_id)
        if installment is None:
            raise NotFoundError("installment", installment_id)
        return installment

    def _require_loan(self, loan_id: str) -> Loan:
        loan = self.repository.load_loan(loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return loan
