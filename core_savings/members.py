"""
Member Registry Module

Member profiles, registration approval, and the member repository. A member's
savings total and accrued interest are cached here; the contribution ledger
and interest distributor are the only writers of those two fields.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid
import re

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .rules import Branch, parse_branch
from .errors import ValidationError, StateConflictError, NotFoundError
from .logging_config import get_logger, log_action


class Role(Enum):
    """Member roles"""
    ADMIN = "admin"
    MEMBER = "member"
    BRANCH_LEAD = "branch_lead"


class RegistrationStatus(Enum):
    """Registration review status"""
    PENDING = "pending"     # Registered, waiting for an administrator
    APPROVED = "approved"   # May save and borrow
    REJECTED = "rejected"   # Registration refused


EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'


def parse_role(value: Any) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown role '{value}'", field_name="role", invalid_value=value)


@dataclass
class Member(StorageRecord):
    """
    Member profile with cached savings and interest totals
    """
    first_name: str
    last_name: str
    email: str
    role: Role
    branch: Branch
    total_contributions: Money
    interest_received: Money
    status: RegistrationStatus = RegistrationStatus.PENDING

    def __post_init__(self):
        if not re.match(EMAIL_PATTERN, self.email):
            raise ValidationError("Invalid email format", field_name="email", invalid_value=self.email)
        if not self.first_name.strip() or not self.last_name.strip():
            raise ValidationError("First and last name are required", field_name="name")
        if self.total_contributions.currency != self.interest_received.currency:
            raise ValueError("Savings and interest must use the same currency")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def currency(self) -> Currency:
        return self.total_contributions.currency

    @property
    def is_approved(self) -> bool:
        return self.status == RegistrationStatus.APPROVED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'first_name': self.first_name,
            'last_name': self.last_name,
            'email': self.email,
            'role': self.role.value,
            'branch': self.branch.value,
            'status': self.status.value,
            'currency': self.currency.code,
            'total_contributions': str(self.total_contributions.amount),
            'interest_received': str(self.interest_received.amount)
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Member':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            first_name=data['first_name'],
            last_name=data['last_name'],
            email=data['email'],
            role=Role(data['role']),
            branch=Branch(data['branch']),
            status=RegistrationStatus(data['status']),
            total_contributions=Money(Decimal(data['total_contributions']), currency),
            interest_received=Money(Decimal(data['interest_received']), currency)
        )


class MemberRepository:
    """Storage access for members"""

    table_name = "members"

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def save(self, member: Member) -> None:
        member.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, member.id, member.to_dict())

    def find_by_id(self, member_id: str) -> Optional[Member]:
        data = self.storage.load(self.table_name, member_id)
        return Member.from_dict(data) if data else None

    def get(self, member_id: str) -> Member:
        member = self.find_by_id(member_id)
        if member is None:
            raise NotFoundError("member", member_id)
        return member

    def find_by_email(self, email: str) -> Optional[Member]:
        matches = self.storage.find(self.table_name, {'email': email.lower()})
        return Member.from_dict(matches[0]) if matches else None

    def list(self, role: Optional[Role] = None, branch: Optional[Branch] = None,
             status: Optional[RegistrationStatus] = None) -> List[Member]:
        filters: Dict[str, Any] = {}
        if role:
            filters['role'] = role.value
        if branch:
            filters['branch'] = branch.value
        if status:
            filters['status'] = status.value
        members = [Member.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        members.sort(key=lambda m: (m.created_at, m.id))
        return members

    def delete(self, member_id: str) -> bool:
        return self.storage.delete(self.table_name, member_id)


class MemberRegistry:
    """
    Registration and review of members
    """

    def __init__(self, repository: MemberRepository, audit_trail: AuditTrail, currency: Currency):
        self.repository = repository
        self.audit_trail = audit_trail
        self.currency = currency
        self.logger = get_logger("core_savings.members")

    def register(
        self,
        first_name: str,
        last_name: str,
        email: str,
        branch: Any,
        role: Any = Role.MEMBER,
        auto_approve: bool = False
    ) -> Member:
        """
        Register a new member, pending administrator approval

        Args:
            first_name: Given name
            last_name: Family name
            email: Unique email address
            branch: Branch the member belongs to
            role: admin, member or branch_lead
            auto_approve: Skip the review step (used when an admin creates the member)

        Returns:
            Created Member
        """
        role = parse_role(role)
        branch = parse_branch(branch)
        email = email.strip().lower()

        if self.repository.find_by_email(email):
            log_action(self.logger, "warning", "Registration refused: duplicate email",
                       action="register_member", extra={"email": email})
            raise ValidationError(f"A member with email {email} already exists",
                                  field_name="email", invalid_value=email)

        now = datetime.now(timezone.utc)
        zero = Money.zero(self.currency)
        member = Member(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            email=email,
            role=role,
            branch=branch,
            total_contributions=zero,
            interest_received=zero,
            status=RegistrationStatus.APPROVED if auto_approve else RegistrationStatus.PENDING
        )
        self.repository.save(member)

        self.audit_trail.log_event(
            event_type=AuditEventType.MEMBER_REGISTERED,
            entity_type="member",
            entity_id=member.id,
            metadata={
                "email": member.email,
                "role": role.value,
                "branch": branch.value,
                "status": member.status.value
            }
        )
        log_action(
            self.logger, "info", f"Member registered: {member.full_name}",
            member_id=member.id, action="register_member", resource=f"member:{member.id}",
            extra={"role": role.value, "branch": branch.value, "status": member.status.value}
        )
        return member

    def decide_registration(self, member_id: str, approve: bool, decided_by: Optional[str] = None) -> Member:
        """Approve or reject a pending registration"""
        member = self.repository.get(member_id)
        if member.status != RegistrationStatus.PENDING:
            log_action(self.logger, "warning", f"Registration of member {member_id} already decided",
                       member_id=member_id, action="decide_registration", resource=f"member:{member_id}")
            raise StateConflictError(
                f"Registration of member {member_id} is already {member.status.value}",
                entity_type="member", entity_id=member_id, current_state=member.status.value
            )

        member.status = RegistrationStatus.APPROVED if approve else RegistrationStatus.REJECTED
        self.repository.save(member)

        self.audit_trail.log_event(
            event_type=AuditEventType.MEMBER_APPROVED if approve else AuditEventType.MEMBER_REJECTED,
            entity_type="member",
            entity_id=member.id,
            metadata={"status": member.status.value},
            actor_id=decided_by
        )
        log_action(
            self.logger, "info", f"Registration {member.status.value}: {member.full_name}",
            member_id=member.id, action="decide_registration", resource=f"member:{member.id}"
        )
        return member

    def update(
        self,
        member_id: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
        branch: Any = None,
        role: Any = None,
        updated_by: Optional[str] = None
    ) -> Member:
        """
        Edit a member's profile fields

        Savings and accrued interest are not editable here; they only change
        through ledger entries and interest distribution.

        Raises:
            ValidationError: Bad name, email, branch or role, or an email used by another member
        """
        member = self.repository.get(member_id)

        changes: Dict[str, Any] = {}
        if first_name is not None:
            changes['first_name'] = first_name.strip()
        if last_name is not None:
            changes['last_name'] = last_name.strip()
        if email is not None:
            email = email.strip().lower()
            owner = self.repository.find_by_email(email)
            if owner is not None and owner.id != member_id:
                log_action(self.logger, "warning", "Update refused: duplicate email",
                           member_id=member_id, action="update_member", extra={"email": email})
                raise ValidationError(f"A member with email {email} already exists",
                                      field_name="email", invalid_value=email)
            changes['email'] = email
        if branch is not None:
            changes['branch'] = parse_branch(branch)
        if role is not None:
            changes['role'] = parse_role(role)

        changed = {k: v for k, v in changes.items() if getattr(member, k) != v}
        if not changed:
            return member

        updated = replace(member, **changed)
        self.repository.save(updated)

        self.audit_trail.log_event(
            event_type=AuditEventType.MEMBER_UPDATED,
            entity_type="member",
            entity_id=member_id,
            metadata={
                field: {"old": getattr(member, field), "new": value}
                for field, value in changed.items()
            },
            actor_id=updated_by
        )
        log_action(
            self.logger, "info", f"Member updated: {updated.full_name}",
            member_id=member_id, action="update_member", resource=f"member:{member_id}",
            extra={"fields": sorted(changed)}
        )
        return updated

    def delete(self, member_id: str, has_history: bool) -> None:
        """
        Delete a member that never saved, borrowed or was charged

        Raises:
            StateConflictError: If the member has savings or ledger/loan history
        """
        member = self.repository.get(member_id)
        if not member.total_contributions.is_zero() or has_history:
            log_action(self.logger, "warning", f"Member {member_id} has history; delete refused",
                       member_id=member_id, action="delete_member", resource=f"member:{member_id}")
            raise StateConflictError(
                f"Member {member_id} has ledger history and cannot be deleted",
                entity_type="member", entity_id=member_id, current_state=member.status.value
            )
        self.repository.delete(member_id)
        self.audit_trail.log_event(
            event_type=AuditEventType.MEMBER_DELETED,
            entity_type="member",
            entity_id=member_id,
            metadata={"email": member.email}
        )
        log_action(
            self.logger, "info", f"Member deleted: {member.full_name}",
            member_id=member_id, action="delete_member", resource=f"member:{member_id}"
        )
