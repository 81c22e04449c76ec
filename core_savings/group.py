"""
Savings Group Service

SavingsGroup wires storage, locks, audit and the domain managers together
from configuration and is the single entry point used by the HTTP API.
"""

from decimal import Decimal
from datetime import date, datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .config import SavingsConfig, get_config
from .currency import Money, Currency
from .storage import StorageInterface, create_storage
from .audit import AuditTrail
from .locking import LockRegistry, REGISTRY_LOCK, member_lock
from .rules import Branch, GroupRules, RulesTable, parse_branch
from .members import Member, MemberRepository, MemberRegistry, Role, RegistrationStatus
from .loans import Loan, LoanManager, LoanRepayment, LoanRepository, LoanStatus
from .distribution import InterestDistribution, InterestDistributor
from .contributions import Contribution, ContributionLedger, ContributionRepository, ContributionType
from .penalties import Penalty, PenaltyManager, PenaltyRepository, PenaltyStatus
from .reporting import AggregateReport, MemberShare, ReportingEngine
from .eligibility import max_loan_amount, is_eligible
from .errors import ValidationError, IntegrityError
from .logging_config import get_logger, log_action


@dataclass
class MemberProfile:
    """Member with the figures derived from loans and penalties"""
    member: Member
    active_loan: Optional[Loan]
    unpaid_penalties: Money
    max_loan_amount: Money
    eligible: bool


class SavingsGroup:
    """
    Savings group with all components initialized
    """

    def __init__(self, settings: Optional[SavingsConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.settings = settings or get_config()
        s = self.settings

        try:
            self.currency = Currency[s.currency.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency: {s.currency}")

        self.storage = storage or create_storage(s.storage_backend, s.sqlite_path)
        self.locks = LockRegistry(timeout=s.lock_timeout_seconds)
        self.audit_trail = AuditTrail(self.storage, enabled=s.enable_audit_logging)
        self.rules = RulesTable()

        # Repositories
        self.member_repository = MemberRepository(self.storage)
        self.loan_repository = LoanRepository(self.storage)
        self.contribution_repository = ContributionRepository(self.storage)
        self.penalty_repository = PenaltyRepository(self.storage)

        # Managers
        self.registry = MemberRegistry(self.member_repository, self.audit_trail, self.currency)
        self.distributor = InterestDistributor(
            self.storage, self.member_repository, self.audit_trail, roles=s.distribution_roles
        )
        self.loan_manager = LoanManager(
            self.storage, self.loan_repository, self.member_repository, self.rules,
            self.distributor, self.locks, self.audit_trail,
            monthly_rate=Decimal(s.monthly_interest_rate),
            min_duration=s.min_loan_duration_months,
            max_duration=s.max_loan_duration_months,
            month_days=s.loan_month_days,
            allow_overpayment=s.allow_overpayment,
            pool_roles=s.distribution_roles
        )
        self.ledger = ContributionLedger(
            self.storage, self.contribution_repository, self.member_repository,
            self.penalty_repository, self.rules, self.locks, self.audit_trail,
            cutoff_day=s.late_contribution_cutoff_day,
            late_fee=Decimal(s.late_penalty_fee),
            fee_source=s.penalty_fee_source
        )
        self.penalty_manager = PenaltyManager(
            self.storage, self.penalty_repository, self.ledger, self.locks, self.audit_trail
        )
        self.reporting = ReportingEngine(
            self.member_repository, self.loan_repository, self.penalty_repository,
            self.distributor, self.currency, roles=s.distribution_roles
        )
        self.logger = get_logger("core_savings.group")

    def close(self) -> None:
        self.storage.close()

    # Rules

    def get_group_rules(self, branch: Union[Branch, str]) -> GroupRules:
        return self.rules.get_group_rules(branch)

    # Members

    def register_member(self, first_name: str, last_name: str, email: str,
                        branch: Union[Branch, str], role: Union[Role, str] = Role.MEMBER,
                        auto_approve: bool = False) -> Member:
        with self.locks.hold(REGISTRY_LOCK):
            with self.storage.atomic():
                return self.registry.register(first_name, last_name, email, branch, role, auto_approve)

    def approve_registration(self, member_id: str, approved_by: Optional[str] = None) -> Member:
        return self._decide_registration(member_id, True, approved_by)

    def reject_registration(self, member_id: str, rejected_by: Optional[str] = None) -> Member:
        return self._decide_registration(member_id, False, rejected_by)

    def _decide_registration(self, member_id: str, approve: bool, decided_by: Optional[str]) -> Member:
        with self.locks.hold(member_lock(member_id)):
            with self.storage.atomic():
                return self.registry.decide_registration(member_id, approve, decided_by)

    def update_member(self, member_id: str, first_name: Optional[str] = None,
                      last_name: Optional[str] = None, email: Optional[str] = None,
                      branch: Optional[Union[Branch, str]] = None,
                      role: Optional[Union[Role, str]] = None,
                      updated_by: Optional[str] = None) -> Member:
        """Edit profile fields; the registration lock guards email uniqueness"""
        with self.locks.hold(member_lock(member_id), REGISTRY_LOCK):
            with self.storage.atomic():
                return self.registry.update(member_id, first_name, last_name, email,
                                            branch, role, updated_by)

    def delete_member(self, member_id: str) -> None:
        """Delete a member with no savings, ledger entries, loans or penalties"""
        with self.locks.hold(member_lock(member_id)):
            with self.storage.atomic():
                has_history = (
                    self.contribution_repository.has_entries(member_id)
                    or self.loan_repository.has_loans(member_id)
                    or bool(self.penalty_repository.list(member_id=member_id))
                )
                self.registry.delete(member_id, has_history)

    def get_member(self, member_id: str) -> Member:
        return self.member_repository.get(member_id)

    def get_member_profile(self, member_id: str) -> MemberProfile:
        member = self.member_repository.get(member_id)
        active_loan = self.loan_repository.active_loan_for(member_id)
        return MemberProfile(
            member=member,
            active_loan=active_loan,
            unpaid_penalties=self.penalty_repository.unpaid_total(member_id, member.currency),
            max_loan_amount=max_loan_amount(member, self.rules.get_group_rules(member.branch)),
            eligible=is_eligible(active_loan)
        )

    def list_members(self, role: Optional[Union[Role, str]] = None,
                     branch: Optional[Union[Branch, str]] = None,
                     status: Optional[Union[RegistrationStatus, str]] = None) -> List[Member]:
        try:
            role = Role(role) if isinstance(role, str) else role
            status = RegistrationStatus(status) if isinstance(status, str) else status
        except ValueError as e:
            raise ValidationError(str(e), field_name="filter")
        branch = parse_branch(branch) if branch is not None else None
        return self.member_repository.list(role=role, branch=branch, status=status)

    # Loans

    def request_loan(self, member_id: str, amount: Any, duration_months: int,
                     request_date: Optional[datetime] = None) -> Loan:
        return self.loan_manager.request_loan(member_id, amount, duration_months, request_date)

    def approve_loan(self, loan_id: str, approved_by: Optional[str] = None) -> Loan:
        return self.loan_manager.approve_loan(loan_id, approved_by)

    def reject_loan(self, loan_id: str, rejected_by: Optional[str] = None) -> Loan:
        return self.loan_manager.reject_loan(loan_id, rejected_by)

    def repay_loan(self, loan_id: str, amount: Any, payment_date: Optional[datetime] = None,
                   received_by: Optional[str] = None) -> Loan:
        return self.loan_manager.repay_loan(loan_id, amount, payment_date, received_by)

    def get_loan(self, loan_id: str) -> Loan:
        return self.loan_manager.get_loan(loan_id)

    def list_loans(self, member_id: Optional[str] = None,
                   status: Optional[Union[LoanStatus, str]] = None) -> List[Loan]:
        if isinstance(status, str):
            try:
                status = LoanStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown loan status '{status}'", field_name="status",
                                      invalid_value=status)
        return self.loan_manager.list_loans(member_id=member_id, status=status)

    def get_loan_repayments(self, loan_id: str) -> List[LoanRepayment]:
        return self.loan_manager.get_loan_repayments(loan_id)

    def get_interest_distribution(self, loan_id: str) -> Optional[InterestDistribution]:
        return self.distributor.get_distribution(loan_id)

    # Contributions

    def append_contribution(self, member_id: str, amount: Any,
                            contribution_date: Optional[Union[date, datetime]] = None,
                            contribution_type: Union[ContributionType, str] = ContributionType.REGULAR,
                            recorded_by: Optional[str] = None) -> Contribution:
        return self.ledger.append_contribution(member_id, amount, contribution_date,
                                               contribution_type, recorded_by)

    def adjust_balance(self, member_id: str, new_total: Any,
                       recorded_by: Optional[str] = None) -> Optional[Contribution]:
        return self.ledger.adjust_balance(member_id, new_total, recorded_by)

    def list_contributions(self, member_id: Optional[str] = None,
                           contribution_type: Optional[Union[ContributionType, str]] = None) -> List[Contribution]:
        return self.ledger.list_contributions(member_id, contribution_type)

    # Penalties

    def pay_penalty(self, penalty_id: str, paid_by: Optional[str] = None) -> Penalty:
        return self.penalty_manager.pay_penalty(penalty_id, paid_by)

    def waive_penalty(self, penalty_id: str, waived_by: Optional[str] = None) -> Penalty:
        return self.penalty_manager.waive_penalty(penalty_id, waived_by)

    def list_penalties(self, member_id: Optional[str] = None,
                       status: Optional[Union[PenaltyStatus, str]] = None) -> List[Penalty]:
        if isinstance(status, str):
            try:
                status = PenaltyStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown penalty status '{status}'", field_name="status",
                                      invalid_value=status)
        return self.penalty_manager.list_penalties(member_id=member_id, status=status)

    # Reports

    def get_aggregate_report(self) -> AggregateReport:
        return self.reporting.get_aggregate_report()

    def get_member_shares(self) -> List[MemberShare]:
        return self.reporting.get_member_shares()

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Check every ledger invariant and the audit chain

        Returns:
            Dictionary with one entry per check and an overall 'valid' flag
        """
        ledger_errors: List[Dict[str, str]] = []
        for member in self.member_repository.list():
            try:
                self.ledger.verify_member_total(member.id)
            except IntegrityError as e:
                ledger_errors.append({"member_id": member.id, "error": e.message})

        loan_errors: List[Dict[str, str]] = []
        open_loans: Dict[str, int] = {}
        for loan in self.loan_repository.list():
            if not loan.is_terminal:
                open_loans[loan.member_id] = open_loans.get(loan.member_id, 0) + 1
            if loan.is_repaid and self.distributor.get_distribution(loan.id) is None:
                loan_errors.append({"loan_id": loan.id, "error": "repaid loan has no interest distribution"})
        for member_id, count in open_loans.items():
            if count > 1:
                loan_errors.append({"member_id": member_id, "error": f"{count} open loans"})

        distribution_errors: List[Dict[str, str]] = []
        for distribution in self.distributor.list_distributions():
            allocated = sum(distribution.allocations.values(), Money.zero(distribution.interest.currency))
            if allocated + distribution.retained != distribution.interest:
                distribution_errors.append({"loan_id": distribution.loan_id,
                                            "error": "allocations do not add up to interest"})

        audit = self.audit_trail.verify_integrity()
        valid = audit['valid'] and not (ledger_errors or loan_errors or distribution_errors)
        if not valid:
            log_action(self.logger, "error", "Integrity check failed", action="verify_integrity",
                       extra={"ledger_errors": len(ledger_errors), "loan_errors": len(loan_errors),
                              "distribution_errors": len(distribution_errors),
                              "audit_valid": audit['valid']})
        return {
            "valid": valid,
            "ledger_errors": ledger_errors,
            "loan_errors": loan_errors,
            "distribution_errors": distribution_errors,
            "audit": audit
        }
