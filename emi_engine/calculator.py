"""
Interest & EMI Calculator Module

Pure, stateless interest and installment math. Every monetary result is a
Decimal rounded to cents with ROUND_HALF_UP; intermediate math runs in a
dedicated high-precision decimal context so results do not depend on the
calling thread's context.

Rates are annual nominal percentages (12 means 12% per annum).
"""

from decimal import Decimal, Context, ROUND_HALF_EVEN, localcontext
from typing import Optional, Tuple

from .exceptions import InvalidArgumentError
from .money import Numeric, ZERO, HUNDRED, CENT, to_decimal, round_money


DEFAULT_PENALTY_RATE = Decimal('2.00')
MONTHS_PER_YEAR = Decimal('12')
DAYS_PER_YEAR = Decimal('365')
MIN_PRECISION = 10

_precision = 28


def set_precision(precision: int) -> None:
    """
    Set significant digits used for intermediate results

    The setting is process-wide: every engine and every direct calculator
    call in the process shares it, and the last call wins.
    """
    global _precision
    if precision < MIN_PRECISION:
        raise InvalidArgumentError(
            f"Decimal precision must be at least {MIN_PRECISION} digits, got {precision}"
        )
    _precision = precision


def get_precision() -> int:
    return _precision


def _math_context() -> Context:
    return Context(prec=_precision, rounding=ROUND_HALF_EVEN)


def _validate_term(term_months: int, field_name: str = "term_months") -> int:
    if isinstance(term_months, bool) or not isinstance(term_months, int):
        raise InvalidArgumentError(f"{field_name} must be an integer number of months")
    if term_months < 1:
        raise InvalidArgumentError(f"{field_name} must be at least 1 month, got {term_months}")
    return term_months


def _validate_positive(value: Numeric, field_name: str) -> Decimal:
    amount = to_decimal(value, field_name)
    if amount <= ZERO:
        raise InvalidArgumentError(f"{field_name} must be positive, got {amount}")
    return amount


def _validate_non_negative(value: Numeric, field_name: str) -> Decimal:
    amount = to_decimal(value, field_name)
    if amount < ZERO:
        raise InvalidArgumentError(f"{field_name} must not be negative, got {amount}")
    return amount


def validate_loan_terms(
    principal: Numeric,
    annual_rate: Numeric,
    term_months: int
) -> Tuple[Decimal, Decimal, int]:
    """
    Validate the (principal, rate, term) triple shared by every formula

    Returns:
        Tuple of (principal, annual_rate, term_months) as exact values

    Raises:
        InvalidArgumentError: principal <= 0, rate < 0 or term < 1
    """
    return (
        _validate_positive(principal, "principal"),
        _validate_non_negative(annual_rate, "annual_rate"),
        _validate_term(term_months),
    )


def monthly_rate(annual_rate: Decimal) -> Decimal:
    """Convert an annual percentage to a monthly fraction"""
    with localcontext(_math_context()):
        return annual_rate / HUNDRED / MONTHS_PER_YEAR


def simple_interest(principal: Numeric, annual_rate: Numeric, term_months: int) -> Decimal:
    """
    Simple interest: P x R x (T/12) / 100

    Args:
        principal: Principal amount
        annual_rate: Annual interest rate (percentage)
        term_months: Loan tenure in months

    Returns:
        Interest amount rounded to cents
    """
    principal, annual_rate, term_months = validate_loan_terms(principal, annual_rate, term_months)

    with localcontext(_math_context()):
        tenure_years = Decimal(term_months) / MONTHS_PER_YEAR
        interest = principal * annual_rate * tenure_years / HUNDRED

    return round_money(interest)


def compound_interest(
    principal: Numeric,
    annual_rate: Numeric,
    term_months: int,
    compoundings_per_year: int = 12
) -> Decimal:
    """
    Compound interest: P x (1 + R/n)^(n x T) - P, T in years

    Args:
        principal: Principal amount
        annual_rate: Annual interest rate (percentage)
        term_months: Loan tenure in months
        compoundings_per_year: Number of times interest compounds per year

    Returns:
        Interest amount rounded to cents
    """
    principal, annual_rate, term_months = validate_loan_terms(principal, annual_rate, term_months)
    n = _validate_term(compoundings_per_year, "compoundings_per_year")

    with localcontext(_math_context()):
        periods = Decimal(n)
        base = Decimal('1') + annual_rate / HUNDRED / periods
        exponent = periods * Decimal(term_months) / MONTHS_PER_YEAR
        if exponent == exponent.to_integral_value():
            factor = base ** int(exponent)
        else:
            factor = base ** exponent
        interest = principal * factor - principal

    return round_money(interest)


def reducing_balance_emi(principal: Numeric, annual_rate: Numeric, term_months: int) -> Decimal:
    """
    EMI under the reducing balance method: P x r x (1+r)^N / ((1+r)^N - 1)

    A zero rate degenerates to an even split of the principal.
    """
    principal, annual_rate, term_months = validate_loan_terms(principal, annual_rate, term_months)

    if annual_rate == ZERO:
        with localcontext(_math_context()):
            return round_money(principal / Decimal(term_months))

    with localcontext(_math_context()):
        rate = monthly_rate(annual_rate)
        factor = (Decimal('1') + rate) ** term_months
        emi = principal * rate * factor / (factor - Decimal('1'))

    emi = round_money(emi)
    # Rounding down must never leave N installments short of the principal
    if emi * term_months < principal:
        emi += CENT
    return emi


def flat_rate_emi(principal: Numeric, annual_rate: Numeric, term_months: int) -> Decimal:
    """EMI under the flat rate method: (P + simple interest) / N"""
    principal, annual_rate, term_months = validate_loan_terms(principal, annual_rate, term_months)
    total_interest = simple_interest(principal, annual_rate, term_months)

    with localcontext(_math_context()):
        emi = (principal + total_interest) / Decimal(term_months)

    return round_money(emi)


def total_interest_reducing_balance(principal: Numeric, annual_rate: Numeric, term_months: int) -> Decimal:
    """Total interest over the tenure: EMI x N - P"""
    principal, annual_rate, term_months = validate_loan_terms(principal, annual_rate, term_months)
    emi = reducing_balance_emi(principal, annual_rate, term_months)
    return round_money(emi * Decimal(term_months) - principal)


def late_payment_penalty(
    overdue_amount: Numeric,
    annual_penalty_rate: Optional[Numeric],
    days_overdue: int
) -> Decimal:
    """
    Late payment penalty: amount x rate x days / (365 x 100)

    Args:
        overdue_amount: Amount that is overdue
        annual_penalty_rate: Annual penalty rate (percentage), 2.00 when None
        days_overdue: Days past the due date; zero or negative means no penalty

    Returns:
        Penalty amount rounded to cents
    """
    amount = _validate_non_negative(overdue_amount, "overdue_amount")
    if annual_penalty_rate is None:
        rate = DEFAULT_PENALTY_RATE
    else:
        rate = _validate_non_negative(annual_penalty_rate, "annual_penalty_rate")

    if isinstance(days_overdue, bool) or not isinstance(days_overdue, int):
        raise InvalidArgumentError("days_overdue must be an integer")
    if days_overdue <= 0:
        return round_money(ZERO)

    with localcontext(_math_context()):
        penalty = amount * rate * Decimal(days_overdue) / (DAYS_PER_YEAR * HUNDRED)

    return round_money(penalty)


def prepayment_savings(
    remaining_principal: Numeric,
    prepayment_amount: Numeric,
    annual_rate: Numeric,
    remaining_months: int
) -> Decimal:
    """
    Interest saved by prepaying part of the outstanding principal.

    This is an approximation: simple interest on the prepaid amount over the
    remaining tenure. It does not recompute the remaining schedule.
    """
    remaining = _validate_positive(remaining_principal, "remaining_principal")
    prepayment = _validate_positive(prepayment_amount, "prepayment_amount")
    if prepayment > remaining:
        raise InvalidArgumentError(
            f"prepayment_amount {prepayment} exceeds remaining principal {remaining}"
        )
    return simple_interest(prepayment, annual_rate, remaining_months)


def emi_breakdown(
    outstanding_principal: Numeric,
    annual_rate: Numeric,
    emi_amount: Numeric
) -> Tuple[Decimal, Decimal]:
    """
    Split one reducing balance EMI into its interest and principal components

    Args:
        outstanding_principal: Principal remaining before this payment
        annual_rate: Annual interest rate (percentage)
        emi_amount: Total EMI amount

    Returns:
        Tuple of (interest_component, principal_component). The principal
        component is negative when the EMI does not cover the interest; callers
        must treat that as a configuration error.
    """
    outstanding = _validate_non_negative(outstanding_principal, "outstanding_principal")
    rate = _validate_non_negative(annual_rate, "annual_rate")
    emi = _validate_positive(emi_amount, "emi_amount")

    with localcontext(_math_context()):
        interest = round_money(outstanding * monthly_rate(rate))
        principal = round_money(emi - interest)

    return interest, principal


def total_payable(principal: Numeric, annual_rate: Numeric, term_months: int, reducing_balance: bool = True) -> Decimal:
    """Total amount paid over the tenure: EMI x N"""
    if reducing_balance:
        emi = reducing_balance_emi(principal, annual_rate, term_months)
    else:
        emi = flat_rate_emi(principal, annual_rate, term_months)
    return round_money(emi * Decimal(term_months))
