"""
Penalty endpoints
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query

from .dependencies import get_savings_group
from .schemas import PayPenaltyRequest, WaivePenaltyRequest, penalty_response
from ..group import SavingsGroup


router = APIRouter()


@router.get("")
def list_penalties(
    member_id: Optional[str] = Query(None, alias="memberId"),
    status: Optional[str] = None,
    group: SavingsGroup = Depends(get_savings_group)
):
    """List penalties, optionally for one member or status"""
    return [penalty_response(p) for p in group.list_penalties(member_id=member_id, status=status)]


@router.post("/{penalty_id}/pay")
def pay_penalty(
    penalty_id: str,
    request: Optional[PayPenaltyRequest] = Body(None),
    group: SavingsGroup = Depends(get_savings_group)
):
    """Settle an unpaid penalty out of the member's savings"""
    penalty = group.pay_penalty(penalty_id, paid_by=request.paid_by if request else None)
    return penalty_response(penalty)


@router.delete("/{penalty_id}")
def waive_penalty(
    penalty_id: str,
    request: Optional[WaivePenaltyRequest] = Body(None),
    group: SavingsGroup = Depends(get_savings_group)
):
    """Write off an unpaid penalty; savings are not touched"""
    penalty = group.waive_penalty(penalty_id, waived_by=request.waived_by if request else None)
    return penalty_response(penalty)
