"""
Group rules endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_savings_group
from .schemas import rules_response
from ..group import SavingsGroup


router = APIRouter()


@router.get("")
def list_rules(group: SavingsGroup = Depends(get_savings_group)):
    """Loan rules of every branch"""
    return [rules_response(branch.value, rules) for branch, rules in group.rules.all_rules().items()]


@router.get("/{branch}")
def get_group_rules(branch: str, group: SavingsGroup = Depends(get_savings_group)):
    """Loan rules of one branch"""
    rules = group.get_group_rules(branch)
    return rules_response(branch.lower(), rules)
