"""
Interest Distribution Module

When a loan is repaid in full its interest (repayment amount minus principal)
is shared among members in proportion to their savings at that moment.
Allocations are rounded to the currency precision with the largest remainder
method, so they always add up to the interest exactly.
"""

from decimal import Decimal, ROUND_FLOOR
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .members import Member, MemberRepository
from .loans import Loan
from .locking import member_lock
from .errors import IntegrityError
from .logging_config import get_logger, log_action


def split_interest(interest: Money, savings: Mapping[str, Money]) -> Dict[str, Money]:
    """
    Split interest across members in proportion to their savings

    Members with zero or negative savings get nothing. Returns an empty dict
    when nobody has positive savings.

    Args:
        interest: Amount to share
        savings: Savings per member id

    Returns:
        Allocation per member id, summing exactly to interest
    """
    currency = interest.currency
    eligible = {member_id: s for member_id, s in savings.items() if s.is_positive()}
    if not eligible:
        return {}

    total = sum((s.amount for s in eligible.values()), Decimal('0'))
    quantum = currency.quantum

    floors: Dict[str, Decimal] = {}
    remainders: Dict[str, Decimal] = {}
    for member_id, s in eligible.items():
        raw = interest.amount * s.amount / total
        floors[member_id] = raw.quantize(quantum, rounding=ROUND_FLOOR)
        remainders[member_id] = raw - floors[member_id]

    leftover_units = int((interest.amount - sum(floors.values(), Decimal('0'))) / quantum)

    # Largest remainder first; ties go to the larger saver, then by id
    order = sorted(eligible, key=lambda m: (-remainders[m], -eligible[m].amount, m))
    for member_id in order[:leftover_units]:
        floors[member_id] += quantum

    return {member_id: Money(amount, currency) for member_id, amount in floors.items()}


@dataclass
class InterestDistribution(StorageRecord):
    """
    Outcome of distributing one repaid loan's interest

    The record id is the loan id, so a loan can only ever be distributed once.
    """
    loan_id: str
    borrower_id: str
    interest: Money
    total_savings: Money
    retained: Money
    distributed_at: datetime
    allocations: Dict[str, Money] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'borrower_id': self.borrower_id,
            'currency': self.interest.currency.code,
            'interest': str(self.interest.amount),
            'total_savings': str(self.total_savings.amount),
            'retained': str(self.retained.amount),
            'distributed_at': self.distributed_at.isoformat(),
            'allocations': {k: str(v.amount) for k, v in self.allocations.items()}
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InterestDistribution':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            borrower_id=data['borrower_id'],
            interest=Money(Decimal(data['interest']), currency),
            total_savings=Money(Decimal(data['total_savings']), currency),
            retained=Money(Decimal(data['retained']), currency),
            distributed_at=datetime.fromisoformat(data['distributed_at']),
            allocations={k: Money(Decimal(v), currency) for k, v in data['allocations'].items()}
        )


class InterestDistributor:
    """
    Credits repaid-loan interest to members' accrued interest

    distribute() expects to run inside the caller's storage transaction while
    the caller holds every lock returned by lock_names().
    """

    table_name = "interest_distributions"

    def __init__(
        self,
        storage: StorageInterface,
        members: MemberRepository,
        audit_trail: AuditTrail,
        roles: Sequence[str] = ("member",)
    ):
        self.storage = storage
        self.members = members
        self.audit_trail = audit_trail
        self.roles = list(roles)
        self.logger = get_logger("core_savings.distribution")

    def participants(self, member_ids: Optional[Iterable[str]] = None) -> List[Member]:
        """Members whose role shares in the pool, optionally limited to the given ids"""
        wanted = set(member_ids) if member_ids is not None else None
        return [
            m for m in self.members.list()
            if m.role.value in self.roles and (wanted is None or m.id in wanted)
        ]

    def lock_names(self) -> List[str]:
        return [member_lock(m.id) for m in self.participants()]

    def savings_snapshot(self, members: Iterable[Member]) -> Dict[str, Money]:
        return {m.id: m.total_contributions for m in members}

    def projected_allocations(self, loan: Loan, members: Iterable[Member]) -> Dict[str, Money]:
        """What each member would receive if the loan were repaid now"""
        participants = [m for m in members if m.role.value in self.roles]
        return split_interest(loan.interest, self.savings_snapshot(participants))

    def distribute(
        self,
        loan: Loan,
        when: Optional[datetime] = None,
        member_ids: Optional[Iterable[str]] = None
    ) -> InterestDistribution:
        """
        Distribute a repaid loan's interest

        Args:
            loan: Loan that has just reached its repayment amount
            when: Distribution time, defaults to now
            member_ids: Members whose locks the caller holds

        Returns:
            Stored InterestDistribution

        Raises:
            IntegrityError: If the loan was already distributed or the
                allocations do not add up to the interest
        """
        if self.storage.exists(self.table_name, loan.id):
            raise IntegrityError(
                f"Interest of loan {loan.id} has already been distributed",
                details={"loan_id": loan.id}
            )

        now = datetime.now(timezone.utc)
        interest = loan.interest
        participants = self.participants(member_ids)
        snapshot = self.savings_snapshot(participants)
        total_savings = sum(snapshot.values(), Money.zero(interest.currency))

        allocations = split_interest(interest, snapshot) if total_savings.is_positive() else {}
        allocated = sum(allocations.values(), Money.zero(interest.currency))
        if allocations and allocated != interest:
            raise IntegrityError(
                f"Allocations {allocated.to_string()} do not add up to interest {interest.to_string()}",
                details={"loan_id": loan.id}
            )
        retained = interest - allocated

        by_id = {m.id: m for m in participants}
        for member_id, share in allocations.items():
            member = by_id[member_id]
            member.interest_received = member.interest_received + share
            self.members.save(member)

        distribution = InterestDistribution(
            id=loan.id,
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            borrower_id=loan.member_id,
            interest=interest,
            total_savings=total_savings,
            retained=retained,
            distributed_at=when or now,
            allocations=allocations
        )
        self.storage.save(self.table_name, distribution.id, distribution.to_dict())

        if allocations:
            self.audit_trail.log_event(
                event_type=AuditEventType.INTEREST_DISTRIBUTED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "interest": interest.to_string(),
                    "total_savings": total_savings.to_string(),
                    "allocations": {k: str(v.amount) for k, v in allocations.items()}
                }
            )
            log_action(
                self.logger, "info",
                f"Interest distributed: {interest.to_string()} across {len(allocations)} members",
                member_id=loan.member_id, action="distribute_interest", resource=f"loan:{loan.id}",
                extra={"total_savings": str(total_savings.amount)}
            )
        else:
            self.audit_trail.log_event(
                event_type=AuditEventType.INTEREST_RETAINED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"interest": interest.to_string(), "total_savings": total_savings.to_string()}
            )
            log_action(
                self.logger, "warning", f"No member savings; interest {interest.to_string()} retained",
                member_id=loan.member_id, action="distribute_interest", resource=f"loan:{loan.id}"
            )

        return distribution

    def get_distribution(self, loan_id: str) -> Optional[InterestDistribution]:
        data = self.storage.load(self.table_name, loan_id)
        return InterestDistribution.from_dict(data) if data else None

    def list_distributions(self) -> List[InterestDistribution]:
        distributions = [InterestDistribution.from_dict(d) for d in self.storage.load_all(self.table_name)]
        distributions.sort(key=lambda d: d.distributed_at)
        return distributions
