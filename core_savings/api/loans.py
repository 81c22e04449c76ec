"""
Loan endpoints
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, status

from .dependencies import get_savings_group
from .schemas import (
    LoanRequest, LoanDecisionRequest, RepaymentRequest,
    loan_response, repayment_response
)
from ..group import SavingsGroup


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def request_loan(request: LoanRequest, group: SavingsGroup = Depends(get_savings_group)):
    """Request a loan; it stays pending until reviewed"""
    loan = group.request_loan(
        member_id=request.member_id,
        amount=request.amount,
        duration_months=request.duration,
        request_date=request.request_date
    )
    return loan_response(loan)


@router.get("")
def list_loans(
    member_id: Optional[str] = Query(None, alias="memberId"),
    status: Optional[str] = None,
    group: SavingsGroup = Depends(get_savings_group)
):
    """List loans, optionally for one member or status"""
    return [loan_response(loan) for loan in group.list_loans(member_id=member_id, status=status)]


@router.get("/{loan_id}")
def get_loan(loan_id: str, group: SavingsGroup = Depends(get_savings_group)):
    """Get loan details"""
    return loan_response(group.get_loan(loan_id))


@router.get("/{loan_id}/repayments")
def get_loan_repayments(loan_id: str, group: SavingsGroup = Depends(get_savings_group)):
    """Repayment history of a loan"""
    return [repayment_response(r) for r in group.get_loan_repayments(loan_id)]


@router.post("/{loan_id}/approve")
def approve_loan(
    loan_id: str,
    request: Optional[LoanDecisionRequest] = Body(None),
    group: SavingsGroup = Depends(get_savings_group)
):
    """Approve a pending loan"""
    loan = group.approve_loan(loan_id, approved_by=request.approved_by if request else None)
    return loan_response(loan)


@router.post("/{loan_id}/reject")
def reject_loan(
    loan_id: str,
    request: Optional[LoanDecisionRequest] = Body(None),
    group: SavingsGroup = Depends(get_savings_group)
):
    """Reject a pending loan"""
    loan = group.reject_loan(loan_id, rejected_by=request.rejected_by if request else None)
    return loan_response(loan)


@router.post("/{loan_id}/repay")
def repay_loan(loan_id: str, request: RepaymentRequest, group: SavingsGroup = Depends(get_savings_group)):
    """Apply a repayment"""
    loan = group.repay_loan(
        loan_id,
        request.amount,
        payment_date=request.payment_date,
        received_by=request.received_by
    )
    return loan_response(loan)
