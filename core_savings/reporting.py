"""
Reporting Module

Read-only figures derived on demand from members, loans and penalties:
the group's net available balance, its best-case future balance, penalties
collected, and each member's share of the pool.
"""

from decimal import Decimal, ROUND_HALF_UP
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence

from .currency import Money, Currency
from .members import Member, MemberRepository
from .loans import Loan, LoanRepository, LoanStatus
from .penalties import PenaltyRepository, PenaltyStatus
from .distribution import InterestDistributor
from .eligibility import available_balance, pooled_savings
from .logging_config import get_logger


PERCENT_QUANTUM = Decimal('0.01')


@dataclass
class AggregateReport:
    """System-wide balances"""
    net_available: Money
    best_future_balance: Money
    total_paid_penalties: Money
    total_savings: Money
    outstanding_repayments: Money
    active_loans: int
    pending_loans: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'net_available': str(self.net_available.amount),
            'best_future_balance': str(self.best_future_balance.amount),
            'total_paid_penalties': str(self.total_paid_penalties.amount),
            'total_savings': str(self.total_savings.amount),
            'outstanding_repayments': str(self.outstanding_repayments.amount),
            'active_loans': self.active_loans,
            'pending_loans': self.pending_loans,
            'currency': self.net_available.currency.code
        }


@dataclass
class MemberShare:
    """One member's claim on the pool"""
    member_id: str
    full_name: str
    total_contribution: Money
    share_percentage: Decimal
    interest_earned: Money
    interest_to_be_earned: Money


def share_percentage(savings: Money, total_savings: Money) -> Decimal:
    """savings / total x 100, rounded to two places; 0 when the pool is empty"""
    if not total_savings.is_positive():
        return Decimal('0.00')
    return (savings.amount / total_savings.amount * Decimal('100')).quantize(
        PERCENT_QUANTUM, rounding=ROUND_HALF_UP
    )


def best_future_balance(net_available: Money, loans: Iterable[Loan]) -> Money:
    """
    Balance if every outstanding loan were repaid in full

    Adds what is still owed on approved/active loans and the interest that
    pending loans would earn.
    """
    balance = net_available
    for loan in loans:
        if loan.draws_on_pool:
            balance = balance + loan.outstanding
        elif loan.status == LoanStatus.PENDING:
            balance = balance + loan.interest
    return balance


class ReportingEngine:
    """Derives reports; never writes"""

    def __init__(
        self,
        members: MemberRepository,
        loans: LoanRepository,
        penalties: PenaltyRepository,
        distributor: InterestDistributor,
        currency: Currency,
        roles: Sequence[str] = ("member",)
    ):
        self.members = members
        self.loans = loans
        self.penalties = penalties
        self.distributor = distributor
        self.currency = currency
        self.roles = list(roles)
        self.logger = get_logger("core_savings.reporting")

    def get_aggregate_report(self) -> AggregateReport:
        members = self.members.list()
        loans = self.loans.list()

        net_available = available_balance(members, loans, self.roles, self.currency)

        paid_penalties = Money.zero(self.currency)
        for penalty in self.penalties.list(status=PenaltyStatus.PAID):
            paid_penalties = paid_penalties + penalty.fee

        outstanding = Money.zero(self.currency)
        for loan in loans:
            if loan.draws_on_pool:
                outstanding = outstanding + loan.outstanding

        report = AggregateReport(
            net_available=net_available,
            best_future_balance=best_future_balance(net_available, loans),
            total_paid_penalties=paid_penalties,
            total_savings=pooled_savings(members, self.roles, self.currency),
            outstanding_repayments=outstanding,
            active_loans=sum(1 for loan in loans if loan.draws_on_pool),
            pending_loans=sum(1 for loan in loans if loan.status == LoanStatus.PENDING)
        )
        self.logger.debug("Aggregate report computed: net available %s", net_available.to_string())
        return report

    def get_member_shares(self) -> List[MemberShare]:
        members = [m for m in self.members.list() if m.role.value in self.roles]
        total = pooled_savings(members, self.roles, self.currency)
        projected = self._projected_interest(members)

        return [
            MemberShare(
                member_id=m.id,
                full_name=m.full_name,
                total_contribution=m.total_contributions,
                share_percentage=share_percentage(m.total_contributions, total),
                interest_earned=m.interest_received,
                interest_to_be_earned=projected.get(m.id, Money.zero(self.currency))
            )
            for m in members
        ]

    def interest_to_be_earned(self, member_id: str) -> Money:
        members = self.members.list()
        self.members.get(member_id)
        return self._projected_interest(members).get(member_id, Money.zero(self.currency))

    def _projected_interest(self, members: List[Member]) -> Dict[str, Money]:
        # Today's savings snapshot applied to every loan still being repaid
        totals: Dict[str, Money] = {}
        for loan in self.loans.list():
            if not loan.draws_on_pool:
                continue
            for member_id, share in self.distributor.projected_allocations(loan, members).items():
                totals[member_id] = totals.get(member_id, Money.zero(self.currency)) + share
        return totals
