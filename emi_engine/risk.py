"""
Risk Scoring Module

Advisory borrower risk score from 0 (lowest risk) to 100 (highest risk),
recomputed from the borrower's loans and installments on every call.

Component weights:
- 40%: Payment history (share of payments not made on time)
- 20%: Exposure (total principal ever borrowed)
- 15%: Tenure (remaining months across active loans)
- 15%: Concurrency (number of active loans)
- 10%: Default history (number of defaulted loans)
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from .dates import months_between
from .logging_config import get_logger
from .models import Loan, Installment, LoanStatus, InstallmentStatus
from .money import ZERO, HUNDRED, round_money
from .repository import LoanRepository


logger = get_logger("emi_engine.risk")

PAYMENT_HISTORY = "payment_history"
EXPOSURE = "exposure"
TENURE = "tenure"
CONCURRENCY = "concurrency"
DEFAULT_HISTORY = "default_history"

WEIGHTS: Dict[str, Decimal] = {
    PAYMENT_HISTORY: Decimal('0.40'),
    EXPOSURE: Decimal('0.20'),
    TENURE: Decimal('0.15'),
    CONCURRENCY: Decimal('0.15'),
    DEFAULT_HISTORY: Decimal('0.10'),
}

NEUTRAL_HISTORY_SCORE = Decimal('50')


class RiskLevel(Enum):
    """Risk bands over the 0-100 score"""
    LOW = "low"              # <= 30
    MEDIUM = "medium"        # <= 60
    HIGH = "high"            # <= 80
    CRITICAL = "critical"    # > 80


_RECOMMENDATIONS = {
    RiskLevel.LOW: "Low risk borrower. Eligible for premium loan terms.",
    RiskLevel.MEDIUM: "Moderate risk. Standard loan terms apply.",
    RiskLevel.HIGH: "High risk borrower. Consider requiring collateral or guarantor.",
    RiskLevel.CRITICAL: "Critical risk. Loan approval not recommended.",
}


@dataclass
class RiskAssessment:
    """Result of scoring one borrower"""
    borrower_id: str
    total_score: Decimal
    level: RiskLevel
    recommendation: str
    components: Dict[str, Decimal] = field(default_factory=dict)
    assessed_on: date = field(default_factory=date.today)

    def to_dict(self) -> Dict:
        return {
            "borrower_id": self.borrower_id,
            "total_score": str(self.total_score),
            "level": self.level.value,
            "recommendation": self.recommendation,
            "components": {name: str(score) for name, score in self.components.items()},
            "assessed_on": self.assessed_on.isoformat()
        }


def payment_history_score(installments: List[Installment], as_of: date) -> Decimal:
    """
    Share of payments not made on time, scaled to 0-100.

    The payment history is every installment that is PAID or already past
    due and unsettled; an empty history scores a neutral 50.
    """
    history = [
        installment
        for installment in installments
        if installment.status == InstallmentStatus.PAID
        or (installment.status != InstallmentStatus.WAIVED and installment.due_date < as_of)
    ]
    if not history:
        return NEUTRAL_HISTORY_SCORE

    on_time = sum(1 for installment in history if installment.paid_on_time)
    ratio = Decimal(on_time) / Decimal(len(history))
    return round_money((Decimal('1') - ratio) * HUNDRED)


def exposure_score(loans: List[Loan]) -> Decimal:
    """Bands on total principal ever borrowed: <10k, <50k, <100k, <250k"""
    if not loans:
        return ZERO
    total = sum((loan.principal for loan in loans), ZERO)
    if total < Decimal('10000'):
        return Decimal('20')
    elif total < Decimal('50000'):
        return Decimal('40')
    elif total < Decimal('100000'):
        return Decimal('60')
    elif total < Decimal('250000'):
        return Decimal('80')
    return Decimal('100')


def tenure_score(active_loans: List[Loan], as_of: date) -> Decimal:
    """Bands on remaining whole months summed across active loans: <12, <36, <60, <120"""
    if not active_loans:
        return ZERO
    remaining = sum(
        max(0, months_between(as_of, loan.end_date))
        for loan in active_loans
        if loan.end_date is not None
    )
    if remaining < 12:
        return Decimal('20')
    elif remaining < 36:
        return Decimal('40')
    elif remaining < 60:
        return Decimal('60')
    elif remaining < 120:
        return Decimal('80')
    return Decimal('100')


def concurrency_score(active_count: int, has_loans: bool = True) -> Decimal:
    """Bands on active loan count: <=1, 2, 3, 4+"""
    if not has_loans:
        return ZERO
    if active_count <= 1:
        return Decimal('20')
    elif active_count == 2:
        return Decimal('40')
    elif active_count == 3:
        return Decimal('70')
    return Decimal('100')


def default_history_score(defaulted_count: int) -> Decimal:
    if defaulted_count == 0:
        return ZERO
    elif defaulted_count == 1:
        return Decimal('80')
    return Decimal('100')


def determine_risk_level(score: Decimal) -> RiskLevel:
    if score <= 30:
        return RiskLevel.LOW
    elif score <= 60:
        return RiskLevel.MEDIUM
    elif score <= 80:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


def build_recommendation(level: RiskLevel, components: Dict[str, Decimal]) -> str:
    """Level-driven advice with specific concerns appended"""
    parts = [_RECOMMENDATIONS[level]]
    if components[PAYMENT_HISTORY] > 60:
        parts.append("Payment history shows concerns.")
    if components[DEFAULT_HISTORY] > 0:
        parts.append("Has previous default(s).")
    if components[CONCURRENCY] > 60:
        parts.append("Has multiple active loans.")
    return " ".join(parts)


class RiskScorer:
    """
    Scores borrowers from their loan history
    """

    def __init__(self, repository: LoanRepository):
        self.repository = repository

    def score(self, borrower_id: str, as_of: Optional[date] = None) -> RiskAssessment:
        """
        Compute a fresh risk assessment for a borrower

        Args:
            borrower_id: Opaque borrower identifier
            as_of: Scoring date (defaults to today)

        Returns:
            RiskAssessment with total score, level, components and recommendation
        """
        as_of = as_of or date.today()
        loans = self.repository.find_loans_by_borrower(borrower_id)
        active_loans = [loan for loan in loans if loan.status == LoanStatus.ACTIVE]
        defaulted = sum(1 for loan in loans if loan.status == LoanStatus.DEFAULTED)

        installments: List[Installment] = []
        for loan in loans:
            installments.extend(self.repository.load_installments(loan.id))

        components = {
            PAYMENT_HISTORY: payment_history_score(installments, as_of),
            EXPOSURE: exposure_score(loans),
            TENURE: tenure_score(active_loans, as_of),
            CONCURRENCY: concurrency_score(len(active_loans), has_loans=bool(loans)),
            DEFAULT_HISTORY: default_history_score(defaulted),
        }

        total = sum((components[name] * weight for name, weight in WEIGHTS.items()), ZERO)
        total = round_money(min(HUNDRED, max(ZERO, total)))
        level = determine_risk_level(total)

        logger.info(f"Risk score for borrower {borrower_id}: {total} ({level.value})")

        return RiskAssessment(
            borrower_id=borrower_id,
            total_score=total,
            level=level,
            recommendation=build_recommendation(level, components),
            components=components,
            assessed_on=as_of
        )
