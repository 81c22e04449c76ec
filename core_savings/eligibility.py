"""
Eligibility & Sizing Calculator

Pure functions deciding how much a member may borrow and whether the shared
pool can fund it. Nothing here touches storage.
"""

from decimal import Decimal
from typing import Iterable, Optional, Sequence, TYPE_CHECKING

from .currency import Money, Currency
from .errors import ValidationError
from .rules import GroupRules

if TYPE_CHECKING:
    from .members import Member
    from .loans import Loan


def max_loan_amount(member: 'Member', rules: GroupRules) -> Money:
    """
    Largest principal the member may request under the branch rules

    min(savings x multiplier, cap), never below zero.
    """
    by_savings = member.total_contributions * rules.max_loan_multiplier
    cap = Money(rules.max_loan_amount, member.currency)
    limit = min(by_savings, cap)
    return limit if limit.is_positive() else Money.zero(member.currency)


def is_eligible(active_loan: Optional['Loan']) -> bool:
    """A member may request a loan unless they already hold a pending/approved/active one"""
    return active_loan is None or active_loan.is_terminal


def pooled_savings(members: Iterable['Member'], roles: Sequence[str], currency: Currency) -> Money:
    """Sum of savings of every member whose role takes part in the pool"""
    total = Money.zero(currency)
    for member in members:
        if member.role.value in roles:
            total = total + member.total_contributions
    return total


def available_balance(
    members: Iterable['Member'],
    loans: Iterable['Loan'],
    roles: Sequence[str],
    currency: Currency
) -> Money:
    """
    Capital the group can still lend

    pooled savings - principal of approved/active loans + principal of repaid loans
    """
    balance = pooled_savings(members, roles, currency)
    for loan in loans:
        if loan.draws_on_pool:
            balance = balance - loan.amount
        elif loan.is_repaid:
            balance = balance + loan.amount
    return balance


def check_loan_admission(
    member: 'Member',
    amount: Money,
    duration_months: int,
    rules: GroupRules,
    active_loan: Optional['Loan'],
    pool_available: Money,
    min_duration: int = 1,
    max_duration: int = 24
) -> None:
    """
    Validate a loan request against every admission rule

    Raises:
        ValidationError: Naming the first rule the request breaks
    """
    if not member.is_approved:
        raise ValidationError(
            f"Member {member.id} registration is {member.status.value}; only approved members may borrow",
            field_name="member_id", invalid_value=member.id
        )
    if not amount.is_positive():
        raise ValidationError("Loan amount must be greater than zero",
                              field_name="amount", invalid_value=amount.amount)
    if isinstance(duration_months, bool) or not isinstance(duration_months, int) \
            or not min_duration <= duration_months <= max_duration:
        raise ValidationError(
            f"Loan duration must be between {min_duration} and {max_duration} months",
            field_name="duration", invalid_value=duration_months
        )
    if not is_eligible(active_loan):
        raise ValidationError(
            f"Member {member.id} already has a {active_loan.status.value} loan",
            field_name="member_id", invalid_value=member.id, loan_id=active_loan.id
        )

    personal_limit = max_loan_amount(member, rules)
    if amount > personal_limit:
        raise ValidationError(
            f"Requested {amount.to_string()} exceeds the member limit of {personal_limit.to_string()}",
            field_name="amount", invalid_value=amount.amount, limit=personal_limit.amount
        )
    if amount > pool_available:
        raise ValidationError(
            f"Requested {amount.to_string()} exceeds the group's available balance of "
            f"{pool_available.to_string()}",
            field_name="amount", invalid_value=amount.amount, available=pool_available.amount
        )
