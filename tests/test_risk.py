"""
Test suite for borrower risk scoring
"""

import pytest
from decimal import Decimal
from datetime import date

from emi_engine.installments import InstallmentLifecycleManager
from emi_engine.locking import LoanLockRegistry
from emi_engine.models import LoanStatus, create_loan
from emi_engine.repository import InMemoryLoanRepository
from emi_engine.risk import (
    RiskScorer, RiskLevel, exposure_score, tenure_score, concurrency_score,
    default_history_score, determine_risk_level, build_recommendation,
    PAYMENT_HISTORY, EXPOSURE, TENURE, CONCURRENCY, DEFAULT_HISTORY
)
from emi_engine.schedule import ScheduleGenerator


@pytest.fixture
def repository():
    return InMemoryLoanRepository()


@pytest.fixture
def locks():
    return LoanLockRegistry()


@pytest.fixture
def generator(repository, locks):
    return ScheduleGenerator(repository, locks)


@pytest.fixture
def lifecycle(repository, locks):
    return InstallmentLifecycleManager(repository, locks)


@pytest.fixture
def scorer(repository):
    return RiskScorer(repository)


def _loan(principal="1000", borrower_id="borrower-1", status=None):
    loan = create_loan(
        borrower_id=borrower_id,
        principal=Decimal(principal),
        annual_rate=Decimal('12'),
        term_months=12,
        start_date=date(2024, 1, 1)
    )
    if status is not None:
        loan.status = status
    return loan


class TestComponentBands:
    """Test the individual component scores"""

    def test_exposure_bands(self):
        assert exposure_score([]) == Decimal('0')
        assert exposure_score([_loan("9999.99")]) == Decimal('20')
        assert exposure_score([_loan("10000")]) == Decimal('40')
        assert exposure_score([_loan("30000"), _loan("30000")]) == Decimal('60')
        assert exposure_score([_loan("249999")]) == Decimal('80')
        assert exposure_score([_loan("250000")]) == Decimal('100')

    def test_tenure_bands(self):
        as_of = date(2024, 1, 1)
        loan = _loan()
        loan.end_date = date(2026, 1, 1)
        assert tenure_score([], as_of) == Decimal('0')
        assert tenure_score([loan], as_of) == Decimal('40')

        loan.end_date = date(2023, 6, 1)
        assert tenure_score([loan], as_of) == Decimal('20')

        loan.end_date = date(2034, 1, 1)
        assert tenure_score([loan], as_of) == Decimal('100')

    def test_concurrency_bands(self):
        assert concurrency_score(0, has_loans=False) == Decimal('0')
        assert concurrency_score(0) == Decimal('20')
        assert concurrency_score(1) == Decimal('20')
        assert concurrency_score(2) == Decimal('40')
        assert concurrency_score(3) == Decimal('70')
        assert concurrency_score(6) == Decimal('100')

    def test_default_history_bands(self):
        assert default_history_score(0) == Decimal('0')
        assert default_history_score(1) == Decimal('80')
        assert default_history_score(3) == Decimal('100')

    @pytest.mark.parametrize("score, level", [
        (Decimal('0'), RiskLevel.LOW),
        (Decimal('30'), RiskLevel.LOW),
        (Decimal('30.01'), RiskLevel.MEDIUM),
        (Decimal('60'), RiskLevel.MEDIUM),
        (Decimal('80'), RiskLevel.HIGH),
        (Decimal('80.01'), RiskLevel.CRITICAL),
        (Decimal('100'), RiskLevel.CRITICAL),
    ])
    def test_risk_levels(self, score, level):
        assert determine_risk_level(score) == level

    def test_recommendation_clauses(self):
        components = {
            PAYMENT_HISTORY: Decimal('75'),
            EXPOSURE: Decimal('20'),
            TENURE: Decimal('20'),
            CONCURRENCY: Decimal('100'),
            DEFAULT_HISTORY: Decimal('80'),
        }
        text = build_recommendation(RiskLevel.CRITICAL, components)

        assert text.startswith("Critical risk. Loan approval not recommended.")
        assert "Payment history shows concerns." in text
        assert "Has previous default(s)." in text
        assert "Has multiple active loans." in text


class TestRiskScorer:
    """Test scoring borrowers from their loan history"""

    def test_borrower_without_loans(self, scorer):
        assessment = scorer.score("nobody", as_of=date(2024, 1, 1))

        assert assessment.components[PAYMENT_HISTORY] == Decimal('50')
        assert assessment.components[EXPOSURE] == Decimal('0')
        assert assessment.components[TENURE] == Decimal('0')
        assert assessment.components[CONCURRENCY] == Decimal('0')
        assert assessment.components[DEFAULT_HISTORY] == Decimal('0')
        assert assessment.total_score == Decimal('20.00')
        assert assessment.level == RiskLevel.LOW
        assert assessment.recommendation == "Low risk borrower. Eligible for premium loan terms."

    def test_new_borrower_with_active_loan(self, scorer, generator):
        generator.generate_schedule(_loan("12000"))
        assessment = scorer.score("borrower-1", as_of=date(2024, 1, 15))

        assert assessment.components[PAYMENT_HISTORY] == Decimal('50')
        assert assessment.components[EXPOSURE] == Decimal('40')
        assert assessment.components[TENURE] == Decimal('20')
        assert assessment.components[CONCURRENCY] == Decimal('20')
        assert assessment.total_score == Decimal('34.00')
        assert assessment.level == RiskLevel.MEDIUM
        assert assessment.recommendation == "Moderate risk. Standard loan terms apply."

    def test_late_payer(self, scorer, generator, lifecycle):
        """One late payment and one missed payment: nothing on time"""
        loan = _loan("12000")
        installments = generator.generate_schedule(loan)
        lifecycle.record_payment(installments[0].id, Decimal('1066.19'), paid_on=date(2024, 2, 10))

        assessment = scorer.score("borrower-1", as_of=date(2024, 3, 15))

        assert assessment.components[PAYMENT_HISTORY] == Decimal('100.00')
        assert assessment.total_score == Decimal('54.00')
        assert "Payment history shows concerns." in assessment.recommendation

    def test_on_time_payer(self, scorer, generator, lifecycle):
        loan = _loan("12000")
        installments = generator.generate_schedule(loan)
        lifecycle.record_payment(installments[0].id, Decimal('1066.19'), paid_on=date(2024, 2, 1))
        lifecycle.record_payment(installments[1].id, Decimal('1066.19'), paid_on=date(2024, 2, 25))

        assessment = scorer.score("borrower-1", as_of=date(2024, 3, 15))
        assert assessment.components[PAYMENT_HISTORY] == Decimal('0.00')

    def test_previous_defaults(self, scorer, repository):
        repository.save_loan(_loan("5000", status=LoanStatus.DEFAULTED))
        repository.save_loan(_loan("5000", status=LoanStatus.DEFAULTED))

        assessment = scorer.score("borrower-1", as_of=date(2024, 1, 1))

        assert assessment.components[DEFAULT_HISTORY] == Decimal('100')
        assert assessment.components[CONCURRENCY] == Decimal('20')
        assert assessment.total_score == Decimal('41.00')
        assert "Has previous default(s)." in assessment.recommendation

    def test_many_active_loans(self, scorer, generator):
        for _ in range(4):
            generator.generate_schedule(_loan("1000"))

        assessment = scorer.score("borrower-1", as_of=date(2024, 1, 15))

        assert assessment.components[CONCURRENCY] == Decimal('100')
        assert "Has multiple active loans." in assessment.recommendation

    def test_other_borrowers_ignored(self, scorer, generator):
        generator.generate_schedule(_loan("500000", borrower_id="someone-else"))
        assessment = scorer.score("borrower-1", as_of=date(2024, 1, 1))
        assert assessment.total_score == Decimal('20.00')

    def test_score_bounded(self, scorer, repository, generator):
        for _ in range(3):
            repository.save_loan(_loan("100000", status=LoanStatus.DEFAULTED))
        for _ in range(5):
            generator.generate_schedule(_loan("100000"))

        assessment = scorer.score("borrower-1", as_of=date(2024, 1, 1))
        assert Decimal('0') <= assessment.total_score <= Decimal('100')

    def test_to_dict(self, scorer):
        data = scorer.score("nobody", as_of=date(2024, 1, 1)).to_dict()
        assert data["total_score"] == "20.00"
        assert data["level"] == "low"
        assert data["components"][PAYMENT_HISTORY] == "50"
