"""
Loan Module

Handles loan requests, approval, rejection, repayment and the hand-off to
interest distribution once a loan is repaid in full.

The transition rules are plain functions over Loan snapshots; LoanManager
loads, applies and saves them under the loan's named lock.
"""

from decimal import Decimal
from contextlib import contextmanager
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING
from enum import Enum
import uuid

from .currency import Money, Currency, as_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .members import MemberRepository
from .rules import RulesTable
from .eligibility import available_balance, check_loan_admission
from .locking import LockRegistry, POOL_LOCK, loan_lock, member_lock
from .errors import ValidationError, StateConflictError, NotFoundError, ConcurrencyError
from .logging_config import get_logger, log_action

if TYPE_CHECKING:
    from .distribution import InterestDistributor, InterestDistribution


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"     # Requested, waiting for review
    APPROVED = "approved"   # Accepted by a reviewer
    REJECTED = "rejected"   # Refused; terminal
    ACTIVE = "active"       # Funds out, repayments accepted
    REPAID = "repaid"       # Fully repaid; terminal


TERMINAL_STATUSES = frozenset({LoanStatus.REJECTED, LoanStatus.REPAID})

ALLOWED_TRANSITIONS: Dict[LoanStatus, frozenset] = {
    LoanStatus.PENDING: frozenset({LoanStatus.APPROVED, LoanStatus.REJECTED}),
    LoanStatus.APPROVED: frozenset({LoanStatus.ACTIVE, LoanStatus.REPAID}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.ACTIVE, LoanStatus.REPAID}),
    LoanStatus.REJECTED: frozenset(),
    LoanStatus.REPAID: frozenset(),
}


@dataclass
class Loan(StorageRecord):
    """Member loan with simple monthly interest"""
    member_id: str
    amount: Money                # principal
    repayment_amount: Money      # principal + interest
    paid_amount: Money
    duration_months: int
    interest_rate: Decimal       # monthly rate applied at request time
    request_date: datetime
    due_date: datetime
    status: LoanStatus = LoanStatus.PENDING

    approved_date: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_date: Optional[datetime] = None
    rejected_by: Optional[str] = None
    repaid_date: Optional[datetime] = None

    def __post_init__(self):
        if self.paid_amount > self.repayment_amount:
            raise ValueError("Paid amount cannot exceed the repayment amount")

    @property
    def currency(self) -> Currency:
        return self.amount.currency

    @property
    def interest(self) -> Money:
        return self.repayment_amount - self.amount

    @property
    def outstanding(self) -> Money:
        return self.repayment_amount - self.paid_amount

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def draws_on_pool(self) -> bool:
        """Principal currently lent out of the pool"""
        return self.status in (LoanStatus.APPROVED, LoanStatus.ACTIVE)

    @property
    def is_repaid(self) -> bool:
        return self.status == LoanStatus.REPAID

    def to_dict(self) -> Dict[str, Any]:
        def iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'member_id': self.member_id,
            'currency': self.currency.code,
            'amount': str(self.amount.amount),
            'repayment_amount': str(self.repayment_amount.amount),
            'paid_amount': str(self.paid_amount.amount),
            'duration_months': self.duration_months,
            'interest_rate': str(self.interest_rate),
            'request_date': self.request_date.isoformat(),
            'due_date': self.due_date.isoformat(),
            'status': self.status.value,
            'approved_date': iso(self.approved_date),
            'approved_by': self.approved_by,
            'rejected_date': iso(self.rejected_date),
            'rejected_by': self.rejected_by,
            'repaid_date': iso(self.repaid_date)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        currency = Currency[data['currency']]

        def get_money(field_name: str) -> Money:
            return Money(Decimal(data[field_name]), currency)

        def get_date(field_name: str) -> Optional[datetime]:
            value = data.get(field_name)
            return datetime.fromisoformat(value) if value else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            member_id=data['member_id'],
            amount=get_money('amount'),
            repayment_amount=get_money('repayment_amount'),
            paid_amount=get_money('paid_amount'),
            duration_months=int(data['duration_months']),
            interest_rate=Decimal(data['interest_rate']),
            request_date=datetime.fromisoformat(data['request_date']),
            due_date=datetime.fromisoformat(data['due_date']),
            status=LoanStatus(data['status']),
            approved_date=get_date('approved_date'),
            approved_by=data.get('approved_by'),
            rejected_date=get_date('rejected_date'),
            rejected_by=data.get('rejected_by'),
            repaid_date=get_date('repaid_date')
        )


@dataclass
class LoanRepayment(StorageRecord):
    """One repayment applied to a loan"""
    loan_id: str
    member_id: str
    amount: Money
    paid_total: Money  # cumulative paid amount after this repayment
    payment_date: datetime
    received_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'member_id': self.member_id,
            'currency': self.amount.currency.code,
            'amount': str(self.amount.amount),
            'paid_total': str(self.paid_total.amount),
            'payment_date': self.payment_date.isoformat(),
            'received_by': self.received_by
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanRepayment':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            member_id=data['member_id'],
            amount=Money(Decimal(data['amount']), currency),
            paid_total=Money(Decimal(data['paid_total']), currency),
            payment_date=datetime.fromisoformat(data['payment_date']),
            received_by=data.get('received_by')
        )


def calculate_repayment_amount(amount: Money, monthly_rate: Decimal, duration_months: int) -> Money:
    """Simple interest: amount x (1 + monthly_rate x duration)"""
    return Money(amount.amount * (Decimal('1') + monthly_rate * Decimal(duration_months)), amount.currency)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def calculate_due_date(request_date: datetime, duration_months: int, month_days: int = 30) -> datetime:
    return request_date + timedelta(days=duration_months * month_days)


def ensure_transition(loan: Loan, target: LoanStatus, operation: str) -> None:
    """
    Raises:
        StateConflictError: If the loan's status does not allow moving to target
    """
    if target not in ALLOWED_TRANSITIONS[loan.status]:
        raise StateConflictError(
            f"Cannot {operation} loan {loan.id}: loan is {loan.status.value}",
            entity_type="loan", entity_id=loan.id, current_state=loan.status.value
        )


def apply_approval(loan: Loan, approved_by: Optional[str], when: datetime) -> Loan:
    """
    Approve a pending loan

    Approval hands the funds out at once, so the stored result is ACTIVE.
    """
    ensure_transition(loan, LoanStatus.APPROVED, "approve")
    return replace(loan, status=LoanStatus.ACTIVE, approved_date=when, approved_by=approved_by)


def apply_rejection(loan: Loan, rejected_by: Optional[str], when: datetime) -> Loan:
    ensure_transition(loan, LoanStatus.REJECTED, "reject")
    return replace(loan, status=LoanStatus.REJECTED, rejected_date=when, rejected_by=rejected_by)


def apply_repayment(
    loan: Loan,
    amount: Money,
    when: datetime,
    allow_overpayment: bool = False
) -> Tuple[Loan, Money]:
    """
    Apply a repayment to an approved/active loan

    Args:
        loan: Current loan snapshot
        amount: Amount received
        when: Payment time
        allow_overpayment: Accept amounts above the outstanding balance,
            applying only the outstanding part

    Returns:
        (updated loan, amount actually applied)
    """
    if loan.status not in (LoanStatus.APPROVED, LoanStatus.ACTIVE):
        raise StateConflictError(
            f"Cannot repay loan {loan.id}: loan is {loan.status.value}",
            entity_type="loan", entity_id=loan.id, current_state=loan.status.value
        )
    if amount.currency != loan.currency:
        raise ValidationError(
            f"Repayment currency {amount.currency.code} does not match loan currency {loan.currency.code}",
            field_name="amount"
        )
    if not amount.is_positive():
        raise ValidationError("Repayment amount must be greater than zero",
                              field_name="amount", invalid_value=amount.amount)

    outstanding = loan.outstanding
    if amount > outstanding:
        if not allow_overpayment:
            raise ValidationError(
                f"Repayment {amount.to_string()} exceeds outstanding balance {outstanding.to_string()}",
                field_name="amount", invalid_value=amount.amount, outstanding=outstanding.amount
            )
        amount = outstanding

    paid = loan.paid_amount + amount
    if paid >= loan.repayment_amount:
        ensure_transition(loan, LoanStatus.REPAID, "repay")
        return replace(loan, paid_amount=paid, status=LoanStatus.REPAID, repaid_date=when), amount

    ensure_transition(loan, LoanStatus.ACTIVE, "repay")
    return replace(loan, paid_amount=paid, status=LoanStatus.ACTIVE), amount


class LoanRepository:
    """Storage access for loans and their repayments"""

    loans_table = "loans"
    repayments_table = "loan_repayments"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def save(self, loan: Loan) -> None:
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def find_by_id(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def get(self, loan_id: str) -> Loan:
        loan = self.find_by_id(loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return loan

    def list(self, member_id: Optional[str] = None, status: Optional[LoanStatus] = None) -> List[Loan]:
        filters: Dict[str, Any] = {}
        if member_id:
            filters['member_id'] = member_id
        if status:
            filters['status'] = status.value
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda l: (l.request_date, l.created_at, l.id))
        return loans

    def active_loan_for(self, member_id: str) -> Optional[Loan]:
        """The member's non-terminal loan, if any"""
        for loan in self.list(member_id=member_id):
            if not loan.is_terminal:
                return loan
        return None

    def save_repayment(self, repayment: LoanRepayment) -> None:
        self.storage.save(self.repayments_table, repayment.id, repayment.to_dict())

    def list_repayments(self, loan_id: str) -> List[LoanRepayment]:
        repayments = [
            LoanRepayment.from_dict(data)
            for data in self.storage.find(self.repayments_table, {'loan_id': loan_id})
        ]
        repayments.sort(key=lambda r: (r.payment_date, r.created_at))
        return repayments

    def has_loans(self, member_id: str) -> bool:
        return bool(self.storage.find(self.loans_table, {'member_id': member_id}))


class LoanManager:
    """
    Manages the loan lifecycle from request through repayment
    """

    sweep_attempts = 5

    def __init__(
        self,
        storage: StorageInterface,
        repository: LoanRepository,
        members: MemberRepository,
        rules: RulesTable,
        distributor: 'InterestDistributor',
        locks: LockRegistry,
        audit_trail: AuditTrail,
        monthly_rate: Decimal = Decimal('0.0125'),
        min_duration: int = 1,
        max_duration: int = 24,
        month_days: int = 30,
        allow_overpayment: bool = False,
        pool_roles: Sequence[str] = ("member",)
    ):
        self.storage = storage
        self.repository = repository
        self.members = members
        self.rules = rules
        self.distributor = distributor
        self.locks = locks
        self.audit_trail = audit_trail
        self.monthly_rate = monthly_rate
        self.min_duration = min_duration
        self.max_duration = max_duration
        self.month_days = month_days
        self.allow_overpayment = allow_overpayment
        self.pool_roles = list(pool_roles)
        self.logger = get_logger("core_savings.loans")

    def request_loan(
        self,
        member_id: str,
        amount: Any,
        duration_months: int,
        request_date: Optional[datetime] = None
    ) -> Loan:
        """
        Request a new loan

        Args:
            member_id: Borrowing member
            amount: Principal (Money, Decimal, int or numeric string)
            duration_months: Term in months
            request_date: Defaults to now

        Returns:
            Created Loan in PENDING status

        Raises:
            ValidationError: If any admission rule fails
        """
        with self.locks.hold(POOL_LOCK, member_lock(member_id)):
            with self.storage.atomic():
                member = self.members.get(member_id)
                principal = as_money(amount, member.currency)
                rules = self.rules.get_group_rules(member.branch)
                pool = available_balance(
                    self.members.list(), self.repository.list(), self.pool_roles, member.currency
                )

                try:
                    check_loan_admission(
                        member, principal, duration_months, rules,
                        active_loan=self.repository.active_loan_for(member_id),
                        pool_available=pool,
                        min_duration=self.min_duration,
                        max_duration=self.max_duration
                    )
                except ValidationError as e:
                    log_action(self.logger, "warning", f"Loan request refused: {e.message}",
                               member_id=member_id, action="request_loan", extra=e.details)
                    raise

                now = datetime.now(timezone.utc)
                request_date = _as_utc(request_date) if request_date else now
                loan = Loan(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    member_id=member_id,
                    amount=principal,
                    repayment_amount=calculate_repayment_amount(principal, self.monthly_rate, duration_months),
                    paid_amount=Money.zero(principal.currency),
                    duration_months=duration_months,
                    interest_rate=self.monthly_rate,
                    request_date=request_date,
                    due_date=calculate_due_date(request_date, duration_months, self.month_days)
                )
                self.repository.save(loan)

                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_REQUESTED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "member_id": member_id,
                        "amount": loan.amount.to_string(),
                        "repayment_amount": loan.repayment_amount.to_string(),
                        "duration_months": duration_months,
                        "due_date": loan.due_date.isoformat()
                    },
                    actor_id=member_id
                )

        log_action(
            self.logger, "info", f"Loan requested: {loan.amount.to_string()} over {duration_months} months",
            member_id=member_id, action="request_loan", resource=f"loan:{loan.id}",
            extra={"repayment_amount": str(loan.repayment_amount.amount)}
        )
        return loan

    def approve_loan(self, loan_id: str, approved_by: Optional[str] = None) -> Loan:
        """
        Approve a pending loan; the loan becomes ACTIVE

        Raises:
            StateConflictError: If the loan is not pending
        """
        with self.locks.hold(loan_lock(loan_id)):
            with self.storage.atomic():
                loan = self._transition(
                    loan_id, lambda l, now: apply_approval(l, approved_by, now), "approve_loan"
                )
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_APPROVED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"member_id": loan.member_id, "amount": loan.amount.to_string(),
                              "status": loan.status.value},
                    actor_id=approved_by
                )

        log_action(
            self.logger, "info", f"Loan approved: {loan.amount.to_string()}",
            member_id=loan.member_id, action="approve_loan", resource=f"loan:{loan.id}",
            extra={"approved_by": approved_by}
        )
        return loan

    def reject_loan(self, loan_id: str, rejected_by: Optional[str] = None) -> Loan:
        """
        Reject a pending loan

        Raises:
            StateConflictError: If the loan is not pending
        """
        with self.locks.hold(loan_lock(loan_id)):
            with self.storage.atomic():
                loan = self._transition(
                    loan_id, lambda l, now: apply_rejection(l, rejected_by, now), "reject_loan"
                )
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_REJECTED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"member_id": loan.member_id, "amount": loan.amount.to_string()},
                    actor_id=rejected_by
                )

        log_action(
            self.logger, "info", "Loan rejected",
            member_id=loan.member_id, action="reject_loan", resource=f"loan:{loan.id}",
            extra={"rejected_by": rejected_by}
        )
        return loan

    def repay_loan(
        self,
        loan_id: str,
        amount: Any,
        payment_date: Optional[datetime] = None,
        received_by: Optional[str] = None
    ) -> Loan:
        """
        Apply a repayment; distributes the loan's interest when it completes

        Args:
            loan_id: Loan being repaid
            amount: Amount received
            payment_date: Defaults to now
            received_by: Administrator recording the payment

        Returns:
            Updated Loan (REPAID once fully paid)

        Raises:
            ValidationError: Non-positive amount or more than the outstanding balance
            StateConflictError: Loan is not approved/active
        """
        with self.locks.hold(loan_lock(loan_id)):
            loan = self.repository.get(loan_id)
            payment = as_money(amount, loan.currency)
            when = _as_utc(payment_date) if payment_date else datetime.now(timezone.utc)

            # Dry run outside the transaction to learn whether distribution will fire
            try:
                preview, _ = apply_repayment(loan, payment, when, self.allow_overpayment)
            except (ValidationError, StateConflictError) as e:
                log_action(self.logger, "warning", f"Repayment refused: {e.message}",
                           member_id=loan.member_id, action="repay_loan", resource=f"loan:{loan_id}")
                raise

            distribution: Optional['InterestDistribution'] = None

            with self._participant_locks(preview.is_repaid) as participant_ids:
                with self.storage.atomic():
                    updated, applied = apply_repayment(loan, payment, when, self.allow_overpayment)
                    self.repository.save(updated)

                    now = datetime.now(timezone.utc)
                    self.repository.save_repayment(LoanRepayment(
                        id=str(uuid.uuid4()),
                        created_at=now,
                        updated_at=now,
                        loan_id=loan_id,
                        member_id=loan.member_id,
                        amount=applied,
                        paid_total=updated.paid_amount,
                        payment_date=when,
                        received_by=received_by
                    ))
                    self.audit_trail.log_event(
                        event_type=AuditEventType.LOAN_REPAYMENT_MADE,
                        entity_type="loan",
                        entity_id=loan_id,
                        metadata={
                            "amount": applied.to_string(),
                            "paid_amount": updated.paid_amount.to_string(),
                            "outstanding": updated.outstanding.to_string()
                        },
                        actor_id=received_by
                    )

                    if updated.is_repaid:
                        self.audit_trail.log_event(
                            event_type=AuditEventType.LOAN_REPAID,
                            entity_type="loan",
                            entity_id=loan_id,
                            metadata={"repayment_amount": updated.repayment_amount.to_string(),
                                      "interest": updated.interest.to_string()},
                            actor_id=received_by
                        )
                        distribution = self.distributor.distribute(updated, when, member_ids=participant_ids)

        log_action(
            self.logger, "info", f"Loan repayment applied: {applied.to_string()}",
            member_id=updated.member_id, action="repay_loan", resource=f"loan:{loan_id}",
            extra={"paid_amount": str(updated.paid_amount.amount), "status": updated.status.value,
                   "distribution_id": distribution.id if distribution else None}
        )
        return updated

    @contextmanager
    def _participant_locks(self, needed: bool):
        """
        Hold the lock of every member sharing in the interest

        The participant list is read again once the locks are held; a member
        who joined the pool in between forces another attempt with the wider
        set. Yields the ids of the locked members.
        """
        if not needed:
            yield []
            return

        for attempt in range(1, self.sweep_attempts + 1):
            names = self.distributor.lock_names()
            with self.locks.hold_all(names):
                newcomers = set(self.distributor.lock_names()) - set(names)
                if not newcomers:
                    yield [name.split(":", 1)[1] for name in names]
                    return
            self.logger.debug("Participants changed while locking (attempt %d): %d new",
                              attempt, len(newcomers))

        raise ConcurrencyError(
            f"Member set kept changing over {self.sweep_attempts} attempts; retry the repayment"
        )

    def get_loan(self, loan_id: str) -> Loan:
        return self.repository.get(loan_id)

    def list_loans(self, member_id: Optional[str] = None, status: Optional[LoanStatus] = None) -> List[Loan]:
        return self.repository.list(member_id=member_id, status=status)

    def get_loan_repayments(self, loan_id: str) -> List[LoanRepayment]:
        self.repository.get(loan_id)
        return self.repository.list_repayments(loan_id)

    def _transition(self, loan_id: str, apply, action: str) -> Loan:
        loan = self.repository.get(loan_id)
        try:
            updated = apply(loan, datetime.now(timezone.utc))
        except StateConflictError as e:
            log_action(self.logger, "warning", e.message, member_id=loan.member_id,
                       action=action, resource=f"loan:{loan_id}")
            raise
        self.repository.save(updated)
        return updated
