"""
Amortization Strategies Module

A closed set of amortization methods, selected once per loan, each turning
(principal, rate, term) into the EMI amount, the total interest and the
per-period schedule lines. Schedule generation and EMI previews share the
same strategy objects.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional

from . import calculator
from .exceptions import InvalidArgumentError
from .models import EmiType
from .money import Numeric, ZERO, round_money, floor_at_zero


@dataclass(frozen=True)
class ScheduleLine:
    """One period of an amortization schedule"""
    installment_number: int
    emi_amount: Decimal
    interest_component: Decimal
    principal_component: Decimal
    outstanding_principal: Decimal      # Balance after this period, never negative
    due_date: Optional[date] = None


class AmortizationStrategy(ABC):
    """Contract shared by every amortization method"""

    emi_type: EmiType

    @abstractmethod
    def emi(self, principal: Numeric, annual_rate: Numeric, term_months: int) -> Decimal:
        """Installment amount"""
        pass

    @abstractmethod
    def total_interest(self, principal: Numeric, annual_rate: Numeric, term_months: int) -> Decimal:
        """Interest over the whole tenure"""
        pass

    @abstractmethod
    def build_lines(self, principal: Numeric, annual_rate: Numeric, term_months: int) -> List[ScheduleLine]:
        """Per-period breakdown, ordered 1..N"""
        pass


class ReducingBalanceStrategy(AmortizationStrategy):
    """
    Equal installments with interest charged on the outstanding balance.

    Interest falls and principal rises every period. Whatever rounding residue
    remains after N-1 periods is folded into the final principal component, so
    the principal components always sum to the principal exactly.
    """

    emi_type = EmiType.REDUCING_BALANCE

    def emi(self, principal, annual_rate, term_months):
        return calculator.reducing_balance_emi(principal, annual_rate, term_months)

    def total_interest(self, principal, annual_rate, term_months):
        return calculator.total_interest_reducing_balance(principal, annual_rate, term_months)

    def build_lines(self, principal, annual_rate, term_months):
        principal, annual_rate, term_months = calculator.validate_loan_terms(
            principal, annual_rate, term_months
        )
        emi_amount = self.emi(principal, annual_rate, term_months)

        lines = []
        outstanding = principal
        for number in range(1, term_months + 1):
            interest, principal_part = calculator.emi_breakdown(outstanding, annual_rate, emi_amount)

            if principal_part < ZERO:
                raise InvalidArgumentError(
                    f"EMI {emi_amount} does not cover interest {interest} "
                    f"in installment {number}"
                )

            if number == term_months:
                # Rounding residue lands on the final installment
                principal_part = outstanding
                outstanding = ZERO
            else:
                outstanding = outstanding - principal_part

            lines.append(ScheduleLine(
                installment_number=number,
                emi_amount=emi_amount,
                interest_component=interest,
                principal_component=round_money(principal_part),
                outstanding_principal=round_money(floor_at_zero(outstanding))
            ))

        return lines


class FlatRateStrategy(AmortizationStrategy):
    """
    Flat-rate installments: simple interest on the original principal spread
    evenly, with constant principal and interest components.

    Flat-rate amortization does not track the balance, so the rounding residue
    of principal / N is left uncorrected.
    """

    emi_type = EmiType.FLAT

    def emi(self, principal, annual_rate, term_months):
        return calculator.flat_rate_emi(principal, annual_rate, term_months)

    def total_interest(self, principal, annual_rate, term_months):
        return calculator.simple_interest(principal, annual_rate, term_months)

    def build_lines(self, principal, annual_rate, term_months):
        principal, annual_rate, term_months = calculator.validate_loan_terms(
            principal, annual_rate, term_months
        )
        emi_amount = self.emi(principal, annual_rate, term_months)
        total_interest = self.total_interest(principal, annual_rate, term_months)

        periods = Decimal(term_months)
        monthly_interest = round_money(total_interest / periods)
        monthly_principal = round_money(principal / periods)

        lines = []
        outstanding = principal
        for number in range(1, term_months + 1):
            outstanding = outstanding - monthly_principal
            lines.append(ScheduleLine(
                installment_number=number,
                emi_amount=emi_amount,
                interest_component=monthly_interest,
                principal_component=monthly_principal,
                outstanding_principal=round_money(floor_at_zero(outstanding))
            ))

        return lines


_STRATEGIES: Dict[EmiType, AmortizationStrategy] = {
    EmiType.REDUCING_BALANCE: ReducingBalanceStrategy(),
    EmiType.FLAT: FlatRateStrategy(),
}


def get_strategy(emi_type: EmiType) -> AmortizationStrategy:
    """Select the amortization strategy for an EMI type"""
    if isinstance(emi_type, str):
        try:
            emi_type = EmiType(emi_type.lower())
        except ValueError:
            raise InvalidArgumentError(f"Unsupported EMI type: {emi_type}")
    strategy = _STRATEGIES.get(emi_type)
    if strategy is None:
        raise InvalidArgumentError(f"Unsupported EMI type: {emi_type}")
    return strategy
