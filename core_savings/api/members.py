"""
Member endpoints
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, status

from .dependencies import get_savings_group
from .schemas import (
    RegisterMemberRequest, UpdateMemberRequest, DecisionRequest, AdjustBalanceRequest,
    member_response, loan_response, contribution_response, share_response
)
from ..group import SavingsGroup


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def register_member(request: RegisterMemberRequest, group: SavingsGroup = Depends(get_savings_group)):
    """Register a member; pending until an administrator approves"""
    member = group.register_member(
        first_name=request.first_name,
        last_name=request.last_name,
        email=request.email,
        branch=request.branch,
        role=request.role,
        auto_approve=request.auto_approve
    )
    return member_response(member)


@router.get("")
def list_members(
    role: Optional[str] = None,
    branch: Optional[str] = None,
    status: Optional[str] = None,
    group: SavingsGroup = Depends(get_savings_group)
):
    """List members, optionally filtered"""
    return [member_response(m) for m in group.list_members(role=role, branch=branch, status=status)]


@router.get("/shares")
def get_member_shares(group: SavingsGroup = Depends(get_savings_group)):
    """Each member's share of pooled savings and interest"""
    return [share_response(share) for share in group.get_member_shares()]


@router.get("/{member_id}")
def get_member(member_id: str, group: SavingsGroup = Depends(get_savings_group)):
    """Member profile with active loan and unpaid penalties"""
    profile = group.get_member_profile(member_id)
    result = member_response(profile.member)
    result.update({
        "activeLoan": loan_response(profile.active_loan) if profile.active_loan else None,
        "penalties": str(profile.unpaid_penalties.amount),
        "maxLoanAmount": str(profile.max_loan_amount.amount),
        "eligible": profile.eligible
    })
    return result


@router.put("/{member_id}")
def update_member(
    member_id: str,
    request: UpdateMemberRequest,
    group: SavingsGroup = Depends(get_savings_group)
):
    """Edit name, email, branch or role; savings and interest are untouched"""
    member = group.update_member(
        member_id,
        first_name=request.first_name,
        last_name=request.last_name,
        email=request.email,
        branch=request.branch,
        role=request.role,
        updated_by=request.updated_by
    )
    return member_response(member)


@router.post("/{member_id}/approve")
def approve_registration(
    member_id: str,
    request: Optional[DecisionRequest] = Body(None),
    group: SavingsGroup = Depends(get_savings_group)
):
    """Approve a pending registration"""
    member = group.approve_registration(member_id, request.decided_by if request else None)
    return member_response(member)


@router.post("/{member_id}/reject")
def reject_registration(
    member_id: str,
    request: Optional[DecisionRequest] = Body(None),
    group: SavingsGroup = Depends(get_savings_group)
):
    """Reject a pending registration"""
    member = group.reject_registration(member_id, request.decided_by if request else None)
    return member_response(member)


@router.put("/{member_id}/balance")
def adjust_balance(
    member_id: str,
    request: AdjustBalanceRequest,
    group: SavingsGroup = Depends(get_savings_group)
):
    """Set a member's savings total through an adjustment entry"""
    entry = group.adjust_balance(member_id, request.total_contributions, request.recorded_by)
    return {
        "member": member_response(group.get_member(member_id)),
        "adjustment": contribution_response(entry) if entry else None
    }


@router.delete("/{member_id}")
def delete_member(member_id: str, group: SavingsGroup = Depends(get_savings_group)):
    """Delete a member without ledger history"""
    group.delete_member(member_id)
    return {"message": "Member deleted successfully", "id": member_id}
