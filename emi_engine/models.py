"""
Loan Aggregate Models

The Loan aggregate and its Installments. A loan owns its installments by id
list; borrower and lender are opaque identifiers that are never traversed
inside the engine. All monetary values are Decimal, all dates calendar dates.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .money import ZERO, to_decimal, round_money, floor_at_zero
from .calculator import DEFAULT_PENALTY_RATE


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"        # Created, schedule not generated yet
    ACTIVE = "active"          # Schedule generated, repayments ongoing
    COMPLETED = "completed"    # Remaining balance reached zero
    DEFAULTED = "defaulted"    # Installment overdue beyond the default threshold
    CANCELLED = "cancelled"    # Cancelled before activation


class InstallmentStatus(Enum):
    """Installment lifecycle states"""
    PENDING = "pending"    # Not yet due
    DUE = "due"            # Due today
    PARTIAL = "partial"    # Partially paid
    PAID = "paid"          # Fully paid including penalty
    OVERDUE = "overdue"    # Past due date, not paid
    WAIVED = "waived"      # Written off by the lender


class EmiType(Enum):
    """Amortization methods"""
    FLAT = "flat"
    REDUCING_BALANCE = "reducing_balance"


SETTLED_STATUSES = frozenset({InstallmentStatus.PAID, InstallmentStatus.WAIVED})
TERMINAL_LOAN_STATUSES = frozenset({LoanStatus.COMPLETED, LoanStatus.CANCELLED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _optional_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _optional_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, (datetime, date)):
                result[key] = value.isoformat()
            elif isinstance(value, Enum):
                result[key] = value.value
        return result

    def touch(self) -> None:
        self.updated_at = _utcnow()


@dataclass
class Loan(StorageRecord):
    """Loan aggregate root"""
    borrower_id: str
    principal: Decimal
    annual_rate: Decimal                # Percent per annum, e.g. 12 for 12%
    term_months: int
    emi_type: EmiType = EmiType.REDUCING_BALANCE
    penalty_rate: Decimal = DEFAULT_PENALTY_RATE  # Percent per annum
    lender_id: Optional[str] = None
    status: LoanStatus = LoanStatus.PENDING
    description: Optional[str] = None

    # Dates
    start_date: Optional[date] = None
    end_date: Optional[date] = None     # Maturity

    # Computed at schedule generation
    monthly_payment: Optional[Decimal] = None
    total_interest: Optional[Decimal] = None
    remaining_balance: Optional[Decimal] = None
    total_penalty_accrued: Decimal = ZERO

    installment_ids: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.principal = to_decimal(self.principal, "principal")
        self.annual_rate = to_decimal(self.annual_rate, "annual_rate")
        if self.penalty_rate is None:
            self.penalty_rate = DEFAULT_PENALTY_RATE
        self.penalty_rate = to_decimal(self.penalty_rate, "penalty_rate")
        self.total_penalty_accrued = to_decimal(self.total_penalty_accrued, "total_penalty_accrued")

    @property
    def is_active(self) -> bool:
        """Check if loan is in active repayment"""
        return self.status == LoanStatus.ACTIVE

    @property
    def is_scheduled(self) -> bool:
        """Check if an installment schedule has been generated"""
        return len(self.installment_ids) > 0

    @property
    def accepts_payments(self) -> bool:
        """Defaulted loans still collect; completed and cancelled loans do not"""
        return self.status in (LoanStatus.ACTIVE, LoanStatus.DEFAULTED)

    def debit_principal(self, amount: Decimal) -> bool:
        """
        Reduce the remaining balance by a paid principal component

        Returns:
            True if this drove the loan to completion
        """
        current = self.remaining_balance if self.remaining_balance is not None else self.principal
        self.remaining_balance = round_money(floor_at_zero(current - amount))
        self.touch()

        if self.remaining_balance == ZERO and self.status not in TERMINAL_LOAN_STATUSES:
            self.status = LoanStatus.COMPLETED
            return True
        return False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        """Rebuild a loan from its storage dictionary"""
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            borrower_id=data['borrower_id'],
            principal=Decimal(data['principal']),
            annual_rate=Decimal(data['annual_rate']),
            term_months=data['term_months'],
            emi_type=EmiType(data['emi_type']),
            penalty_rate=Decimal(data['penalty_rate']),
            lender_id=data.get('lender_id'),
            status=LoanStatus(data['status']),
            description=data.get('description'),
            start_date=_optional_date(data.get('start_date')),
            end_date=_optional_date(data.get('end_date')),
            monthly_payment=_optional_decimal(data.get('monthly_payment')),
            total_interest=_optional_decimal(data.get('total_interest')),
            remaining_balance=_optional_decimal(data.get('remaining_balance')),
            total_penalty_accrued=Decimal(data.get('total_penalty_accrued', '0')),
            installment_ids=list(data.get('installment_ids', []))
        )


@dataclass
class Installment(StorageRecord):
    """Single EMI entry in a loan's schedule"""
    loan_id: str
    installment_number: int             # 1-based, unique per loan
    due_date: date
    principal_component: Decimal
    interest_component: Decimal
    emi_amount: Decimal
    outstanding_principal: Decimal      # Balance after this period
    penalty_amount: Decimal = ZERO
    amount_paid: Decimal = ZERO
    status: InstallmentStatus = InstallmentStatus.PENDING
    paid_date: Optional[date] = None

    def total_due(self) -> Decimal:
        """EMI plus accrued penalty"""
        return self.emi_amount + self.penalty_amount

    def remaining_amount(self) -> Decimal:
        """Amount still owed; negative means overpayment"""
        return self.total_due() - self.amount_paid

    def is_overdue(self, today: Optional[date] = None) -> bool:
        today = today or date.today()
        return not self.is_settled and today > self.due_date

    def days_overdue(self, today: Optional[date] = None) -> int:
        today = today or date.today()
        return (today - self.due_date).days

    @property
    def is_settled(self) -> bool:
        return self.status in SETTLED_STATUSES

    @property
    def paid_on_time(self) -> bool:
        return (
            self.status == InstallmentStatus.PAID
            and self.paid_date is not None
            and self.paid_date <= self.due_date
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        """Rebuild an installment from its storage dictionary"""
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            principal_component=Decimal(data['principal_component']),
            interest_component=Decimal(data['interest_component']),
            emi_amount=Decimal(data['emi_amount']),
            outstanding_principal=Decimal(data['outstanding_principal']),
            penalty_amount=Decimal(data.get('penalty_amount', '0')),
            amount_paid=Decimal(data.get('amount_paid', '0')),
            status=InstallmentStatus(data['status']),
            paid_date=_optional_date(data.get('paid_date'))
        )


def create_loan(
    borrower_id: str,
    principal,
    annual_rate,
    term_months: int,
    emi_type: EmiType = EmiType.REDUCING_BALANCE,
    penalty_rate=None,
    lender_id: Optional[str] = None,
    start_date: Optional[date] = None,
    description: Optional[str] = None
) -> Loan:
    """Create a new PENDING loan with a fresh id"""
    now = _utcnow()
    return Loan(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
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
