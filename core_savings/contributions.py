"""
Contribution Ledger Module

Append-only contribution entries and the member's cached savings total.
Every change to Member.total_contributions goes through this ledger, inside
the same transaction as the entry that explains it, so the cached total
always equals the sum of the member's entries.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import uuid

from .currency import Money, Currency, as_money
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .members import Member, MemberRepository
from .penalties import Penalty, PenaltyRepository, build_penalty
from .rules import RulesTable
from .locking import LockRegistry, member_lock
from .errors import ValidationError, IntegrityError
from .logging_config import get_logger, log_action


class ContributionType(Enum):
    """Kinds of ledger entries"""
    REGULAR = "regular"        # monthly deposit made on time
    PENALTY = "penalty"        # late deposit, or a settled penalty fee (negative)
    INTEREST = "interest"      # interest paid into savings
    ADJUSTMENT = "adjustment"  # administrator correction, signed


MONTH_NAMES = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December"
)

FEE_SOURCE_FLAT = "flat"
FEE_SOURCE_GROUP_RULES = "group_rules"


@dataclass
class Contribution(StorageRecord):
    """Immutable ledger entry"""
    member_id: str
    amount: Money  # signed
    contribution_date: datetime
    month: str
    contribution_type: ContributionType
    recorded_by: Optional[str] = None
    reference_id: Optional[str] = None  # penalty settled by this entry

    @property
    def is_late(self) -> bool:
        return self.contribution_type == ContributionType.PENALTY and self.amount.is_positive()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'member_id': self.member_id,
            'currency': self.amount.currency.code,
            'amount': str(self.amount.amount),
            'contribution_date': self.contribution_date.isoformat(),
            'month': self.month,
            'contribution_type': self.contribution_type.value,
            'recorded_by': self.recorded_by,
            'reference_id': self.reference_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Contribution':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            member_id=data['member_id'],
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            contribution_date=datetime.fromisoformat(data['contribution_date']),
            month=data['month'],
            contribution_type=ContributionType(data['contribution_type']),
            recorded_by=data.get('recorded_by'),
            reference_id=data.get('reference_id')
        )


def month_name(when: Union[date, datetime]) -> str:
    return MONTH_NAMES[when.month - 1]


def is_late(when: Union[date, datetime], cutoff_day: int = 10) -> bool:
    """Deposits after the cutoff day of their month are late"""
    return when.day > cutoff_day


def parse_contribution_type(value: Union[ContributionType, str]) -> ContributionType:
    if isinstance(value, ContributionType):
        return value
    try:
        return ContributionType(str(value).strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown contribution type '{value}'", field_name="type", invalid_value=value,
            allowed=", ".join(t.value for t in ContributionType)
        )


class ContributionRepository:
    """Append-only storage of contribution entries"""

    table_name = "contributions"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def append(self, contribution: Contribution) -> None:
        if self.storage.exists(self.table_name, contribution.id):
            raise IntegrityError(f"Contribution {contribution.id} already recorded",
                                 details={"contribution_id": contribution.id})
        self.storage.save(self.table_name, contribution.id, contribution.to_dict())

    def list(self, member_id: Optional[str] = None,
             contribution_type: Optional[ContributionType] = None) -> List[Contribution]:
        filters: Dict[str, Any] = {}
        if member_id:
            filters['member_id'] = member_id
        if contribution_type:
            filters['contribution_type'] = contribution_type.value
        entries = [Contribution.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        entries.sort(key=lambda c: (c.contribution_date, c.created_at))
        return entries

    def ledger_total(self, member_id: str, currency: Currency) -> Money:
        total = Money.zero(currency)
        for entry in self.list(member_id=member_id):
            total = total + entry.amount
        return total

    def has_entries(self, member_id: str) -> bool:
        return bool(self.storage.find(self.table_name, {'member_id': member_id}))


class ContributionLedger:
    """
    Records contributions, late penalties and balance adjustments
    """

    def __init__(
        self,
        storage: StorageInterface,
        repository: ContributionRepository,
        members: MemberRepository,
        penalties: PenaltyRepository,
        rules: RulesTable,
        locks: LockRegistry,
        audit_trail: AuditTrail,
        cutoff_day: int = 10,
        late_fee: Decimal = Decimal('25'),
        fee_source: str = FEE_SOURCE_FLAT
    ):
        if fee_source not in (FEE_SOURCE_FLAT, FEE_SOURCE_GROUP_RULES):
            raise ValueError(f"Unknown penalty fee source '{fee_source}'")
        self.storage = storage
        self.repository = repository
        self.members = members
        self.penalties = penalties
        self.rules = rules
        self.locks = locks
        self.audit_trail = audit_trail
        self.cutoff_day = cutoff_day
        self.late_fee = late_fee
        self.fee_source = fee_source
        self.logger = get_logger("core_savings.contributions")

    def append_contribution(
        self,
        member_id: str,
        amount: Any,
        contribution_date: Optional[Union[date, datetime]] = None,
        contribution_type: Union[ContributionType, str] = ContributionType.REGULAR,
        recorded_by: Optional[str] = None
    ) -> Contribution:
        """
        Append a contribution and update the member's savings total

        A regular deposit dated after the cutoff day is recorded as a penalty
        entry and an unpaid late penalty is assessed alongside it.

        Args:
            member_id: Contributing member
            amount: Amount (must be positive, except adjustments which are non-zero)
            contribution_date: Date of the deposit, defaults to now
            contribution_type: regular, penalty, interest or adjustment
            recorded_by: Administrator recording the entry

        Returns:
            Created Contribution
        """
        contribution_type = parse_contribution_type(contribution_type)
        when = self._to_datetime(contribution_date)

        with self.locks.hold(member_lock(member_id)):
            with self.storage.atomic():
                member = self.members.get(member_id)
                try:
                    money = self._check_entry(member, amount, contribution_type)
                except ValidationError as e:
                    log_action(self.logger, "warning", f"Contribution refused: {e.message}",
                               member_id=member_id, action="append_contribution", extra=e.details)
                    raise

                late = contribution_type == ContributionType.REGULAR and is_late(when, self.cutoff_day)
                if late:
                    contribution_type = ContributionType.PENALTY

                entry = self._post(member, money, when, contribution_type, recorded_by)

                penalty: Optional[Penalty] = None
                if late:
                    penalty = self._assess_penalty(member, entry)

        log_action(
            self.logger, "info", f"Contribution recorded: {entry.amount.to_string()}",
            member_id=member_id, action="append_contribution", resource=f"contribution:{entry.id}",
            extra={"type": entry.contribution_type.value, "month": entry.month,
                   "penalty_id": penalty.id if penalty else None}
        )
        return entry

    def adjust_balance(self, member_id: str, new_total: Any,
                       recorded_by: Optional[str] = None) -> Optional[Contribution]:
        """
        Set a member's savings total through a signed adjustment entry

        Returns:
            The adjustment entry, or None when the total is already new_total

        Raises:
            ValidationError: Member not approved, or a negative target total
        """
        with self.locks.hold(member_lock(member_id)):
            with self.storage.atomic():
                member = self.members.get(member_id)
                try:
                    self._require_approved(member)
                except ValidationError as e:
                    log_action(self.logger, "warning", f"Adjustment refused: {e.message}",
                               member_id=member_id, action="adjust_balance")
                    raise
                target = as_money(new_total, member.currency)
                old_total = member.total_contributions
                delta = target - old_total
                if delta.is_zero():
                    return None

                entry = self._post(member, delta, datetime.now(timezone.utc),
                                   ContributionType.ADJUSTMENT, recorded_by)
                self.audit_trail.log_event(
                    event_type=AuditEventType.BALANCE_ADJUSTED,
                    entity_type="member",
                    entity_id=member_id,
                    metadata={"old_total": old_total.to_string(), "new_total": target.to_string(),
                              "contribution_id": entry.id},
                    actor_id=recorded_by
                )

        log_action(
            self.logger, "info", f"Balance adjusted by {delta.to_string()}",
            member_id=member_id, action="adjust_balance", resource=f"member:{member_id}",
            extra={"old_total": str(old_total.amount), "new_total": str(target.amount)}
        )
        return entry

    def charge_penalty(self, penalty: Penalty, when: datetime,
                       recorded_by: Optional[str] = None) -> Contribution:
        """
        Take a penalty fee out of the member's savings

        Must run inside the caller's transaction while it holds the member lock.
        """
        member = self.members.get(penalty.member_id)
        return self._post(member, -penalty.fee, when, ContributionType.PENALTY,
                          recorded_by, reference_id=penalty.id)

    def list_contributions(self, member_id: Optional[str] = None,
                           contribution_type: Optional[Union[ContributionType, str]] = None) -> List[Contribution]:
        if contribution_type is not None:
            contribution_type = parse_contribution_type(contribution_type)
        return self.repository.list(member_id=member_id, contribution_type=contribution_type)

    def verify_member_total(self, member_id: str) -> Money:
        """
        Check the cached savings total against the ledger

        Raises:
            IntegrityError: If they differ
        """
        member = self.members.get(member_id)
        ledger_total = self.repository.ledger_total(member_id, member.currency)
        if ledger_total != member.total_contributions:
            log_action(self.logger, "error", "Member total diverges from ledger",
                       member_id=member_id, action="verify_member_total",
                       extra={"cached": str(member.total_contributions.amount),
                              "ledger": str(ledger_total.amount)})
            raise IntegrityError(
                f"Member {member_id} total {member.total_contributions.to_string()} does not match "
                f"ledger sum {ledger_total.to_string()}",
                details={"member_id": member_id}
            )
        return ledger_total

    @staticmethod
    def _require_approved(member: Member) -> None:
        if not member.is_approved:
            raise ValidationError(
                f"Member {member.id} registration is {member.status.value}; "
                f"ledger entries need an approved member",
                field_name="member_id", invalid_value=member.id
            )

    @classmethod
    def _check_entry(cls, member: Member, amount: Any, contribution_type: ContributionType) -> Money:
        cls._require_approved(member)
        money = as_money(amount, member.currency)
        if contribution_type == ContributionType.ADJUSTMENT:
            if money.is_zero():
                raise ValidationError("Adjustment amount cannot be zero",
                                      field_name="amount", invalid_value=money.amount)
        elif not money.is_positive():
            raise ValidationError("Contribution amount must be greater than zero",
                                  field_name="amount", invalid_value=money.amount)
        return money

    def penalty_fee_for(self, member: Member) -> Money:
        if self.fee_source == FEE_SOURCE_GROUP_RULES:
            return Money(self.rules.get_group_rules(member.branch).penalty_fee, member.currency)
        return Money(self.late_fee, member.currency)

    def _post(
        self,
        member: Member,
        amount: Money,
        when: datetime,
        contribution_type: ContributionType,
        recorded_by: Optional[str],
        reference_id: Optional[str] = None
    ) -> Contribution:
        new_total = member.total_contributions + amount
        if new_total.is_negative():
            log_action(self.logger, "warning", "Ledger entry refused: savings would go negative",
                       member_id=member.id, action="post_contribution",
                       extra={"amount": str(amount.amount), "type": contribution_type.value,
                              "total_contributions": str(member.total_contributions.amount)})
            raise ValidationError(
                f"{contribution_type.value.capitalize()} of {amount.to_string()} would leave member "
                f"{member.id} with savings of {new_total.to_string()}",
                field_name="amount", invalid_value=amount.amount,
                total_contributions=member.total_contributions.amount
            )

        now = datetime.now(timezone.utc)
        entry = Contribution(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            member_id=member.id,
            amount=amount,
            contribution_date=when,
            month=month_name(when),
            contribution_type=contribution_type,
            recorded_by=recorded_by,
            reference_id=reference_id
        )
        self.repository.append(entry)

        member.total_contributions = new_total
        self.members.save(member)

        self.audit_trail.log_event(
            event_type=AuditEventType.CONTRIBUTION_RECORDED,
            entity_type="contribution",
            entity_id=entry.id,
            metadata={
                "member_id": member.id,
                "amount": amount.to_string(),
                "type": contribution_type.value,
                "total_contributions": member.total_contributions.to_string()
            },
            actor_id=recorded_by
        )
        return entry

    def _assess_penalty(self, member: Member, entry: Contribution) -> Penalty:
        penalty = build_penalty(member.id, entry.id, self.penalty_fee_for(member), entry.contribution_date)
        self.penalties.save(penalty)
        self.audit_trail.log_event(
            event_type=AuditEventType.PENALTY_ASSESSED,
            entity_type="penalty",
            entity_id=penalty.id,
            metadata={"member_id": member.id, "fee": penalty.fee.to_string(),
                      "contribution_id": entry.id, "day": entry.contribution_date.day}
        )
        log_action(
            self.logger, "info", f"Late contribution penalty assessed: {penalty.fee.to_string()}",
            member_id=member.id, action="assess_penalty", resource=f"penalty:{penalty.id}"
        )
        return penalty

    @staticmethod
    def _to_datetime(value: Optional[Union[date, datetime]]) -> datetime:
        if value is None:
            return datetime.now(timezone.utc)
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
        raise ValidationError(f"Invalid contribution date {value!r}", field_name="date", invalid_value=value)
