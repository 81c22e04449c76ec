"""
Penalty Module

Late-contribution penalties: assessed unpaid when a regular deposit lands
after the monthly cutoff, settled by taking the fee out of the member's
savings, or waived by an administrator without touching the ledger.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TYPE_CHECKING
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .locking import LockRegistry, penalty_lock, member_lock
from .errors import StateConflictError, NotFoundError
from .logging_config import get_logger, log_action

if TYPE_CHECKING:
    from .contributions import ContributionLedger


class PenaltyStatus(Enum):
    """Penalty settlement states"""
    UNPAID = "unpaid"
    PAID = "paid"
    WAIVED = "waived"  # written off; no ledger entry


@dataclass
class Penalty(StorageRecord):
    """Fee charged for a late contribution"""
    member_id: str
    contribution_id: str  # the late deposit
    fee: Money
    assessed_date: datetime
    status: PenaltyStatus = PenaltyStatus.UNPAID
    paid_date: Optional[datetime] = None
    paid_by: Optional[str] = None
    payment_contribution_id: Optional[str] = None  # the -fee ledger entry
    waived_date: Optional[datetime] = None
    waived_by: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status == PenaltyStatus.PAID

    @property
    def is_unpaid(self) -> bool:
        return self.status == PenaltyStatus.UNPAID

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'member_id': self.member_id,
            'contribution_id': self.contribution_id,
            'currency': self.fee.currency.code,
            'fee': str(self.fee.amount),
            'assessed_date': self.assessed_date.isoformat(),
            'status': self.status.value,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
            'paid_by': self.paid_by,
            'payment_contribution_id': self.payment_contribution_id,
            'waived_date': self.waived_date.isoformat() if self.waived_date else None,
            'waived_by': self.waived_by
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Penalty':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            member_id=data['member_id'],
            contribution_id=data['contribution_id'],
            fee=Money(Decimal(data['fee']), Currency[data['currency']]),
            assessed_date=datetime.fromisoformat(data['assessed_date']),
            status=PenaltyStatus(data['status']),
            paid_date=datetime.fromisoformat(data['paid_date']) if data.get('paid_date') else None,
            paid_by=data.get('paid_by'),
            payment_contribution_id=data.get('payment_contribution_id'),
            waived_date=datetime.fromisoformat(data['waived_date']) if data.get('waived_date') else None,
            waived_by=data.get('waived_by')
        )


def build_penalty(member_id: str, contribution_id: str, fee: Money, assessed_date: datetime) -> Penalty:
    now = datetime.now(timezone.utc)
    return Penalty(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        member_id=member_id,
        contribution_id=contribution_id,
        fee=fee,
        assessed_date=assessed_date
    )


class PenaltyRepository:
    """Storage access for penalties"""

    table_name = "penalties"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def save(self, penalty: Penalty) -> None:
        penalty.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, penalty.id, penalty.to_dict())

    def get(self, penalty_id: str) -> Penalty:
        data = self.storage.load(self.table_name, penalty_id)
        if data is None:
            raise NotFoundError("penalty", penalty_id)
        return Penalty.from_dict(data)

    def list(self, member_id: Optional[str] = None, status: Optional[PenaltyStatus] = None) -> List[Penalty]:
        filters: Dict[str, Any] = {}
        if member_id:
            filters['member_id'] = member_id
        if status:
            filters['status'] = status.value
        penalties = [Penalty.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        penalties.sort(key=lambda p: (p.assessed_date, p.created_at))
        return penalties

    def unpaid_total(self, member_id: str, currency: Currency) -> Money:
        total = Money.zero(currency)
        for penalty in self.list(member_id=member_id, status=PenaltyStatus.UNPAID):
            total = total + penalty.fee
        return total


class PenaltyManager:
    """Settles assessed penalties"""

    def __init__(
        self,
        storage: StorageInterface,
        repository: PenaltyRepository,
        ledger: 'ContributionLedger',
        locks: LockRegistry,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.repository = repository
        self.ledger = ledger
        self.locks = locks
        self.audit_trail = audit_trail
        self.logger = get_logger("core_savings.penalties")

    def pay_penalty(self, penalty_id: str, paid_by: Optional[str] = None) -> Penalty:
        """
        Settle an unpaid penalty

        The fee is taken out of the member's savings as a negative penalty
        contribution. Interest distribution is not re-run.

        Raises:
            NotFoundError: Unknown penalty
            StateConflictError: Penalty already paid or waived
            ValidationError: The fee exceeds the member's savings
        """
        member_id = self.repository.get(penalty_id).member_id

        with self.locks.hold(penalty_lock(penalty_id), member_lock(member_id)):
            with self.storage.atomic():
                penalty = self.repository.get(penalty_id)
                self._require_unpaid(penalty, "pay_penalty")

                now = datetime.now(timezone.utc)
                entry = self.ledger.charge_penalty(penalty, now, recorded_by=paid_by)

                penalty.status = PenaltyStatus.PAID
                penalty.paid_date = now
                penalty.paid_by = paid_by
                penalty.payment_contribution_id = entry.id
                self.repository.save(penalty)

                self.audit_trail.log_event(
                    event_type=AuditEventType.PENALTY_PAID,
                    entity_type="penalty",
                    entity_id=penalty_id,
                    metadata={"member_id": member_id, "fee": penalty.fee.to_string(),
                              "contribution_id": entry.id},
                    actor_id=paid_by
                )

        log_action(
            self.logger, "info", f"Penalty paid: {penalty.fee.to_string()}",
            member_id=member_id, action="pay_penalty", resource=f"penalty:{penalty_id}"
        )
        return penalty

    def waive_penalty(self, penalty_id: str, waived_by: Optional[str] = None) -> Penalty:
        """
        Write off an unpaid penalty

        Nothing is posted to the ledger; the member's savings are unchanged.

        Raises:
            NotFoundError: Unknown penalty
            StateConflictError: Penalty already paid or waived
        """
        with self.locks.hold(penalty_lock(penalty_id)):
            with self.storage.atomic():
                penalty = self.repository.get(penalty_id)
                self._require_unpaid(penalty, "waive_penalty")

                penalty.status = PenaltyStatus.WAIVED
                penalty.waived_date = datetime.now(timezone.utc)
                penalty.waived_by = waived_by
                self.repository.save(penalty)

                self.audit_trail.log_event(
                    event_type=AuditEventType.PENALTY_WAIVED,
                    entity_type="penalty",
                    entity_id=penalty_id,
                    metadata={"member_id": penalty.member_id, "fee": penalty.fee.to_string()},
                    actor_id=waived_by
                )

        log_action(
            self.logger, "info", f"Penalty waived: {penalty.fee.to_string()}",
            member_id=penalty.member_id, action="waive_penalty", resource=f"penalty:{penalty_id}",
            extra={"waived_by": waived_by}
        )
        return penalty

    def _require_unpaid(self, penalty: Penalty, action: str) -> None:
        if not penalty.is_unpaid:
            log_action(self.logger, "warning", f"Penalty {penalty.id} is already {penalty.status.value}",
                       member_id=penalty.member_id, action=action, resource=f"penalty:{penalty.id}")
            raise StateConflictError(
                f"Penalty {penalty.id} is already {penalty.status.value}",
                entity_type="penalty", entity_id=penalty.id, current_state=penalty.status.value
            )

    def get_penalty(self, penalty_id: str) -> Penalty:
        return self.repository.get(penalty_id)

    def list_penalties(self, member_id: Optional[str] = None,
                       status: Optional[PenaltyStatus] = None) -> List[Penalty]:
        return self.repository.list(member_id=member_id, status=status)
