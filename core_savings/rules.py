"""
Group Rules Module

Per-branch loan configuration: how many times a member's savings they may
borrow, the absolute loan cap, the branch interest rate and its penalty fee.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Union
from enum import Enum

from .errors import ValidationError


class Branch(Enum):
    """Organizational cohorts of members"""
    BLUE = "blue"
    YELLOW = "yellow"
    RED = "red"
    PURPLE = "purple"


@dataclass(frozen=True)
class GroupRules:
    """Loan rules for one branch"""
    max_loan_multiplier: Decimal  # loanable = savings x multiplier ...
    max_loan_amount: Decimal      # ... capped at this amount
    interest_rate: Decimal
    penalty_fee: Decimal

    def __post_init__(self):
        for name in ('max_loan_multiplier', 'max_loan_amount', 'interest_rate', 'penalty_fee'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, Decimal(str(value)))
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    def to_dict(self) -> Dict[str, str]:
        return {
            'max_loan_multiplier': str(self.max_loan_multiplier),
            'max_loan_amount': str(self.max_loan_amount),
            'interest_rate': str(self.interest_rate),
            'penalty_fee': str(self.penalty_fee)
        }


DEFAULT_GROUP_RULES: Dict[Branch, GroupRules] = {
    Branch.BLUE: GroupRules(Decimal('3'), Decimal('25000'), Decimal('0.10'), Decimal('500')),
    Branch.YELLOW: GroupRules(Decimal('3'), Decimal('25000'), Decimal('0.12'), Decimal('600')),
    Branch.RED: GroupRules(Decimal('3'), Decimal('25000'), Decimal('0.08'), Decimal('400')),
    Branch.PURPLE: GroupRules(Decimal('3'), Decimal('25000'), Decimal('0.15'), Decimal('750')),
}


def parse_branch(branch: Union[Branch, str]) -> Branch:
    """Normalize a branch name, raising ValidationError for unknown branches"""
    if isinstance(branch, Branch):
        return branch
    try:
        return Branch(str(branch).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown branch '{branch}'", field_name="branch", invalid_value=branch,
            allowed=", ".join(b.value for b in Branch)
        )


class RulesTable:
    """Read-only lookup of branch rules"""

    def __init__(self, rules: Optional[Mapping[Branch, GroupRules]] = None):
        self._rules = dict(rules or DEFAULT_GROUP_RULES)

    def get_group_rules(self, branch: Union[Branch, str]) -> GroupRules:
        branch = parse_branch(branch)
        rules = self._rules.get(branch)
        if rules is None:
            raise ValidationError(f"No loan rules configured for branch '{branch.value}'",
                                  field_name="branch", invalid_value=branch.value)
        return rules

    def all_rules(self) -> Dict[Branch, GroupRules]:
        return dict(self._rules)
