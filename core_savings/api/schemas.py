"""
Pydantic schemas for API requests and responses

Payloads use camelCase keys. Identifiers may arrive as a plain string, as
``{"_id": ...}`` or ``{"id": ...}``; they are normalized here and nowhere else.
"""

from decimal import Decimal
from datetime import date, datetime
from typing import Annotated, Any, Dict, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from ..currency import Money, to_decimal
from ..members import Member
from ..loans import Loan, LoanRepayment
from ..contributions import Contribution
from ..penalties import Penalty
from ..reporting import AggregateReport, MemberShare
from ..rules import GroupRules


def normalize_id(value: Any) -> Any:
    """Accept an id string or an object carrying '_id' / 'id'"""
    if isinstance(value, dict):
        value = value.get('_id') or value.get('id')
    return value


def parse_amount(value: Any) -> Decimal:
    try:
        return to_decimal(value)
    except ValueError:
        raise ValueError(f"'{value}' is not a valid amount")


Identifier = Annotated[str, BeforeValidator(normalize_id)]
Amount = Annotated[Decimal, BeforeValidator(parse_amount)]


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# Member schemas
class RegisterMemberRequest(CamelModel):
    first_name: str = Field(..., alias="firstName")
    last_name: str = Field(..., alias="lastName")
    email: str
    branch: str = Field(..., description="blue, yellow, red or purple")
    role: str = Field("member", description="admin, member or branch_lead")
    auto_approve: bool = Field(False, alias="autoApprove")


class UpdateMemberRequest(CamelModel):
    first_name: Optional[str] = Field(None, alias="firstName")
    last_name: Optional[str] = Field(None, alias="lastName")
    email: Optional[str] = None
    branch: Optional[str] = None
    role: Optional[str] = None
    updated_by: Optional[Identifier] = Field(None, alias="updatedBy")


class DecisionRequest(CamelModel):
    decided_by: Optional[Identifier] = Field(None, alias="decidedBy")


class AdjustBalanceRequest(CamelModel):
    total_contributions: Amount = Field(..., alias="totalContributions")
    recorded_by: Optional[Identifier] = Field(None, alias="recordedBy")


# Loan schemas
class LoanRequest(CamelModel):
    member_id: Identifier = Field(..., alias="memberId")
    amount: Amount
    duration: int = Field(..., description="Term in months")
    request_date: Optional[datetime] = Field(None, alias="requestDate")


class LoanDecisionRequest(CamelModel):
    approved_by: Optional[Identifier] = Field(None, alias="approvedBy")
    rejected_by: Optional[Identifier] = Field(None, alias="rejectedBy")


class RepaymentRequest(CamelModel):
    amount: Amount
    payment_date: Optional[datetime] = Field(None, alias="paymentDate")
    received_by: Optional[Identifier] = Field(None, alias="receivedBy")


# Contribution schemas
class ContributionRequest(CamelModel):
    member_id: Identifier = Field(..., alias="memberId")
    amount: Amount
    contribution_date: Optional[Union[datetime, date]] = Field(None, alias="contributionDate")
    type: str = Field("regular", description="regular, penalty, interest or adjustment")
    recorded_by: Optional[Identifier] = Field(None, alias="recordedBy")


class PayPenaltyRequest(CamelModel):
    paid_by: Optional[Identifier] = Field(None, alias="paidBy")


class WaivePenaltyRequest(CamelModel):
    waived_by: Optional[Identifier] = Field(None, alias="waivedBy")


# Response builders
def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _amount(money: Money) -> str:
    return str(money.amount)


def rules_response(branch: str, rules: GroupRules) -> Dict[str, Any]:
    return {
        "branch": branch,
        "maxLoanMultiplier": str(rules.max_loan_multiplier),
        "maxLoanAmount": str(rules.max_loan_amount),
        "interestRate": str(rules.interest_rate),
        "penaltyFee": str(rules.penalty_fee)
    }


def member_response(member: Member) -> Dict[str, Any]:
    return {
        "_id": member.id,
        "id": member.id,
        "firstName": member.first_name,
        "lastName": member.last_name,
        "email": member.email,
        "role": member.role.value,
        "branch": member.branch.value,
        "status": member.status.value,
        "currency": member.currency.code,
        "totalContributions": _amount(member.total_contributions),
        "interestReceived": _amount(member.interest_received),
        "createdAt": _iso(member.created_at)
    }


def loan_response(loan: Loan) -> Dict[str, Any]:
    return {
        "_id": loan.id,
        "id": loan.id,
        "memberId": loan.member_id,
        "status": loan.status.value,
        "currency": loan.currency.code,
        "amount": _amount(loan.amount),
        "repaymentAmount": _amount(loan.repayment_amount),
        "paidAmount": _amount(loan.paid_amount),
        "outstanding": _amount(loan.outstanding),
        "duration": loan.duration_months,
        "interestRate": str(loan.interest_rate),
        "requestDate": _iso(loan.request_date),
        "dueDate": _iso(loan.due_date),
        "approvedDate": _iso(loan.approved_date),
        "approvedBy": loan.approved_by,
        "rejectedDate": _iso(loan.rejected_date),
        "rejectedBy": loan.rejected_by,
        "repaidDate": _iso(loan.repaid_date)
    }


def repayment_response(repayment: LoanRepayment) -> Dict[str, Any]:
    return {
        "id": repayment.id,
        "loanId": repayment.loan_id,
        "amount": _amount(repayment.amount),
        "paidTotal": _amount(repayment.paid_total),
        "paymentDate": _iso(repayment.payment_date),
        "receivedBy": repayment.received_by
    }


def contribution_response(contribution: Contribution) -> Dict[str, Any]:
    return {
        "_id": contribution.id,
        "id": contribution.id,
        "memberId": contribution.member_id,
        "amount": _amount(contribution.amount),
        "currency": contribution.amount.currency.code,
        "contributionDate": _iso(contribution.contribution_date),
        "month": contribution.month,
        "type": contribution.contribution_type.value,
        "recordedBy": contribution.recorded_by,
        "referenceId": contribution.reference_id
    }


def penalty_response(penalty: Penalty) -> Dict[str, Any]:
    return {
        "_id": penalty.id,
        "id": penalty.id,
        "memberId": penalty.member_id,
        "contributionId": penalty.contribution_id,
        "fee": _amount(penalty.fee),
        "currency": penalty.fee.currency.code,
        "status": penalty.status.value,
        "assessedDate": _iso(penalty.assessed_date),
        "paidDate": _iso(penalty.paid_date),
        "waivedDate": _iso(penalty.waived_date),
        "waivedBy": penalty.waived_by
    }


def report_response(report: AggregateReport) -> Dict[str, Any]:
    return {
        "netAvailable": _amount(report.net_available),
        "bestFutureBalance": _amount(report.best_future_balance),
        "totalPaidPenalties": _amount(report.total_paid_penalties),
        "totalSavings": _amount(report.total_savings),
        "outstandingRepayments": _amount(report.outstanding_repayments),
        "activeLoans": report.active_loans,
        "pendingLoans": report.pending_loans,
        "currency": report.net_available.currency.code
    }


def share_response(share: MemberShare) -> Dict[str, Any]:
    return {
        "memberId": share.member_id,
        "name": share.full_name,
        "totalContribution": _amount(share.total_contribution),
        "sharePercentage": str(share.share_percentage),
        "interestEarned": _amount(share.interest_earned),
        "interestToBeEarned": _amount(share.interest_to_be_earned)
    }
