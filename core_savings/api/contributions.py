"""
Contribution endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .dependencies import get_savings_group
from .schemas import ContributionRequest, contribution_response, report_response
from ..group import SavingsGroup


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def append_contribution(request: ContributionRequest, group: SavingsGroup = Depends(get_savings_group)):
    """Record a contribution; late regular deposits are flagged and penalized"""
    entry = group.append_contribution(
        member_id=request.member_id,
        amount=request.amount,
        contribution_date=request.contribution_date,
        contribution_type=request.type,
        recorded_by=request.recorded_by
    )
    return contribution_response(entry)


@router.get("")
def list_contributions(
    member_id: Optional[str] = Query(None, alias="memberId"),
    type: Optional[str] = None,
    group: SavingsGroup = Depends(get_savings_group)
):
    """List ledger entries"""
    return [contribution_response(c) for c in group.list_contributions(member_id, type)]


@router.get("/net")
def get_aggregate_report(group: SavingsGroup = Depends(get_savings_group)):
    """Net available balance, best future balance and penalties collected"""
    return report_response(group.get_aggregate_report())
