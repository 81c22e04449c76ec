"""
Test suite for loans module

Tests loan requests, the approval state machine, repayment processing and
the precision of repayment calculations.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta

from core_savings.audit import AuditEventType
from core_savings.currency import Money, Currency
from core_savings.errors import ValidationError, StateConflictError, NotFoundError, ConcurrencyError
from core_savings.loans import (
    LoanStatus, Loan, calculate_repayment_amount, calculate_due_date, apply_repayment
)

from conftest import ON_TIME, make_group


def eur(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.EUR)


class TestLoanCalculations:
    """Test repayment and due date arithmetic"""

    def test_repayment_amount(self):
        """Test simple monthly interest"""
        assert calculate_repayment_amount(eur(3000), Decimal('0.0125'), 6) == eur('3225.00')
        assert calculate_repayment_amount(eur(1000), Decimal('0.0125'), 8) == eur('1100.00')
        assert calculate_repayment_amount(eur('333.33'), Decimal('0.0125'), 1) == eur('337.50')

    def test_due_date(self):
        """Test due date uses thirty-day months"""
        assert calculate_due_date(ON_TIME, 6) == ON_TIME + timedelta(days=180)
        assert calculate_due_date(ON_TIME, 1, month_days=31) == ON_TIME + timedelta(days=31)


class TestLoanRequest:
    """Test loan admission through the group"""

    def test_scenario_a(self, group, saver):
        """Test 1000 saved allows 3000 over 6 months repaying 3225"""
        saver(savings=10000)
        member = saver(savings=1000)

        loan = group.request_loan(member.id, 3000, 6, request_date=ON_TIME)

        assert loan.status == LoanStatus.PENDING
        assert loan.amount == eur(3000)
        assert loan.repayment_amount == eur('3225.00')
        assert loan.interest == eur('225.00')
        assert loan.paid_amount.is_zero()
        assert loan.due_date == ON_TIME + timedelta(days=180)
        assert group.get_loan(loan.id) == loan

    def test_request_is_audited(self, group, saver):
        """Test a request event is logged"""
        member = saver(savings=1000)
        loan = group.request_loan(member.id, 500, 3)
        events = group.audit_trail.get_events_for_entity("loan", loan.id)
        assert [e.event_type for e in events] == [AuditEventType.LOAN_REQUESTED]

    def test_limit_boundary(self, group, saver):
        """Test the maximum succeeds and one cent more fails"""
        saver(savings=10000)
        member = saver(savings=1000)
        other = saver(savings=1000)

        with pytest.raises(ValidationError):
            group.request_loan(member.id, "3000.01", 6)
        assert group.list_loans(member_id=member.id) == []

        group.request_loan(other.id, 3000, 6)

    def test_pool_limit(self, group, saver):
        """Test requests cannot exceed what the group can lend"""
        first = saver(savings=1000)
        second = saver(savings=1000)

        loan = group.request_loan(first.id, 1500, 6)
        group.approve_loan(loan.id)

        with pytest.raises(ValidationError) as exc_info:
            group.request_loan(second.id, 600, 6)
        assert exc_info.value.details["field_name"] == "amount"
        group.request_loan(second.id, 500, 6)

    def test_duplicate_request(self, group, saver):
        """Test a member with a pending loan cannot request another"""
        member = saver(savings=1000)
        group.request_loan(member.id, 100, 2)
        with pytest.raises(ValidationError):
            group.request_loan(member.id, 100, 2)

    def test_unapproved_member(self, group):
        """Test a pending registration cannot borrow"""
        member = group.register_member("New", "Member", "new@example.com", "blue")
        with pytest.raises(ValidationError):
            group.request_loan(member.id, 100, 2)

    @pytest.mark.parametrize("duration", [0, 25])
    def test_duration_bounds(self, group, saver, duration):
        """Test durations outside the configured range"""
        member = saver(savings=1000)
        with pytest.raises(ValidationError):
            group.request_loan(member.id, 100, duration)

    def test_invalid_amount(self, group, saver):
        """Test non-numeric amounts"""
        member = saver(savings=1000)
        with pytest.raises(ValidationError):
            group.request_loan(member.id, "lots", 2)

    def test_unknown_member(self, group):
        """Test requests for unknown members"""
        with pytest.raises(NotFoundError):
            group.request_loan("missing", 100, 2)

    def test_new_request_after_repayment(self, group, saver):
        """Test a member may borrow again once the previous loan is repaid"""
        member = saver(savings=1000)
        loan = group.request_loan(member.id, 100, 1)
        group.approve_loan(loan.id)
        group.repay_loan(loan.id, loan.repayment_amount.amount)

        again = group.request_loan(member.id, 100, 1)
        assert again.status == LoanStatus.PENDING


class TestLoanDecisions:
    """Test approval and rejection transitions"""

    def test_approve_activates(self, group, saver):
        """Test approval stores the loan as active"""
        member = saver(savings=1000)
        loan = group.request_loan(member.id, 1000, 8)

        approved = group.approve_loan(loan.id, approved_by="admin-1")

        assert approved.status == LoanStatus.ACTIVE
        assert approved.approved_by == "admin-1"
        assert approved.approved_date is not None
        assert group.get_loan(loan.id).status == LoanStatus.ACTIVE

    def test_scenario_c(self, group, saver):
        """Test a rejected loan cannot be approved"""
        member = saver(savings=1000)
        loan = group.request_loan(member.id, 1000, 8)

        rejected = group.reject_loan(loan.id, rejected_by="admin-1")
        assert rejected.status == LoanStatus.REJECTED
        assert rejected.rejected_by == "admin-1"

        with pytest.raises(StateConflictError) as exc_info:
            group.approve_loan(loan.id)
        assert exc_info.value.details["current_state"] == "rejected"
        assert group.get_loan(loan.id).status == LoanStatus.REJECTED

    def test_double_approve(self, group, saver):
        """Test approving twice is refused"""
        member = saver(savings=1000)
        loan = group.request_loan(member.id, 1000, 8)
        group.approve_loan(loan.id)
        with pytest.raises(StateConflictError):
            group.approve_loan(loan.id)
        with pytest.raises(StateConflictError):
            group.reject_loan(loan.id)

    def test_rejected_loan_frees_member(self, group, saver):
        """Test a rejection leaves the member eligible"""
        member = saver(savings=1000)
        loan = group.request_loan(member.id, 1000, 8)
        group.reject_loan(loan.id)
        assert group.get_member_profile(member.id).eligible

    def test_unknown_loan(self, group):
        """Test decisions on unknown loans"""
        with pytest.raises(NotFoundError):
            group.approve_loan("missing")


class TestRepayment:
    """Test repayment processing"""

    def setup_loan(self, group, saver):
        saver(savings=3000)
        member = saver(savings=1000)
        loan = group.request_loan(member.id, 1000, 8)
        return group.approve_loan(loan.id)

    def test_partial_repayment(self, group, saver):
        """Test a partial repayment keeps the loan active"""
        loan = self.setup_loan(group, saver)

        updated = group.repay_loan(loan.id, 400, received_by="admin-1")

        assert updated.status == LoanStatus.ACTIVE
        assert updated.paid_amount == eur(400)
        assert updated.outstanding == eur(700)
        assert group.get_interest_distribution(loan.id) is None

    def test_full_repayment(self, group, saver):
        """Test completing a loan marks it repaid and distributes interest"""
        loan = self.setup_loan(group, saver)

        group.repay_loan(loan.id, 600)
        updated = group.repay_loan(loan.id, 500)

        assert updated.status == LoanStatus.REPAID
        assert updated.paid_amount == updated.repayment_amount
        assert updated.repaid_date is not None
        distribution = group.get_interest_distribution(loan.id)
        assert distribution.interest == eur(100)
        assert sum(distribution.allocations.values(), eur(0)) == eur(100)

    def test_overpayment_refused(self, group, saver):
        """Test paying more than outstanding is refused and nothing changes"""
        loan = self.setup_loan(group, saver)
        with pytest.raises(ValidationError):
            group.repay_loan(loan.id, "1100.01")
        assert group.get_loan(loan.id).paid_amount.is_zero()
        assert group.get_loan_repayments(loan.id) == []

    def test_overpayment_capped_when_allowed(self, saver):
        """Test the configured overpayment mode applies only the outstanding part"""
        lenient = make_group(allow_overpayment=True)
        saver(savings=3000, target=lenient)
        member = saver(savings=1000, target=lenient)
        loan = lenient.approve_loan(lenient.request_loan(member.id, 1000, 8).id)

        updated = lenient.repay_loan(loan.id, 5000)

        assert updated.status == LoanStatus.REPAID
        assert updated.paid_amount == eur(1100)
        assert lenient.get_loan_repayments(loan.id)[0].amount == eur(1100)
        lenient.close()

    def test_non_positive_repayment(self, group, saver):
        """Test zero and negative repayments are refused"""
        loan = self.setup_loan(group, saver)
        for amount in (0, -5):
            with pytest.raises(ValidationError):
                group.repay_loan(loan.id, amount)

    def test_repay_pending_loan(self, group, saver):
        """Test a pending loan cannot be repaid"""
        member = saver(savings=1000)
        loan = group.request_loan(member.id, 100, 2)
        with pytest.raises(StateConflictError):
            group.repay_loan(loan.id, 10)

    def test_repay_repaid_loan(self, group, saver):
        """Test a repaid loan refuses further payments"""
        loan = self.setup_loan(group, saver)
        group.repay_loan(loan.id, 1100)
        with pytest.raises(StateConflictError):
            group.repay_loan(loan.id, 1)

    def test_repayment_history(self, group, saver):
        """Test repayments are recorded in order with running totals"""
        loan = self.setup_loan(group, saver)
        first = datetime(2024, 4, 1, tzinfo=timezone.utc)
        second = datetime(2024, 5, 1, tzinfo=timezone.utc)

        group.repay_loan(loan.id, 300, payment_date=first, received_by="admin-1")
        group.repay_loan(loan.id, 200, payment_date=second)

        history = group.get_loan_repayments(loan.id)
        assert [r.amount for r in history] == [eur(300), eur(200)]
        assert [r.paid_total for r in history] == [eur(300), eur(500)]
        assert history[0].received_by == "admin-1"
        assert history[1].payment_date == second

    def test_member_joining_during_lock_sweep_shares_interest(self, group, saver, monkeypatch):
        """Test a member funded while participant locks are taken is included"""
        loan = self.setup_loan(group, saver)
        list_names = group.distributor.lock_names
        joined = []

        def lock_names():
            names = list_names()
            if not joined:
                joined.append(saver(savings=4000))
            return names

        monkeypatch.setattr(group.distributor, "lock_names", lock_names)
        group.repay_loan(loan.id, 1100)

        distribution = group.get_interest_distribution(loan.id)
        assert distribution.total_savings == eur(8000)
        assert distribution.allocations[joined[0].id] == eur(50)
        assert group.get_member(joined[0].id).interest_received == eur(50)
        assert group.verify_integrity()["valid"]

    def test_unstable_participants_give_up(self, group, saver, monkeypatch):
        """Test the repayment is refused when the member set never settles"""
        loan = self.setup_loan(group, saver)
        list_names = group.distributor.lock_names
        calls = {"n": 0}

        def shifting():
            calls["n"] += 1
            return list_names() if calls["n"] % 2 == 0 else []

        monkeypatch.setattr(group.distributor, "lock_names", shifting)
        with pytest.raises(ConcurrencyError):
            group.repay_loan(loan.id, 1100)

        assert calls["n"] == 2 * group.loan_manager.sweep_attempts
        stored = group.get_loan(loan.id)
        assert stored.status == LoanStatus.ACTIVE
        assert stored.paid_amount.is_zero()
        assert group.get_interest_distribution(loan.id) is None

    def test_failed_distribution_rolls_back(self, group, saver, monkeypatch):
        """Test the final repayment is undone when distribution fails"""
        loan = self.setup_loan(group, saver)
        events_before = group.audit_trail.count_events()

        def fail(*args, **kwargs):
            raise RuntimeError("distribution failed")

        monkeypatch.setattr(group.distributor, "distribute", fail)
        with pytest.raises(RuntimeError):
            group.repay_loan(loan.id, 1100)

        stored = group.get_loan(loan.id)
        assert stored.status == LoanStatus.ACTIVE
        assert stored.paid_amount.is_zero()
        assert group.get_loan_repayments(loan.id) == []
        assert group.audit_trail.count_events() == events_before
        assert group.verify_integrity()["valid"]


class TestApplyRepayment:
    """Test the pure repayment transition"""

    def make_loan(self, status=LoanStatus.ACTIVE, paid=0) -> Loan:
        now = datetime.now(timezone.utc)
        return Loan(
            id="L1", created_at=now, updated_at=now, member_id="M1",
            amount=eur(1000), repayment_amount=eur(1100), paid_amount=eur(paid),
            duration_months=8, interest_rate=Decimal('0.0125'),
            request_date=now, due_date=now, status=status
        )

    def test_input_snapshot_unchanged(self):
        """Test the transition returns a new loan"""
        loan = self.make_loan()
        updated, applied = apply_repayment(loan, eur(100), ON_TIME)
        assert loan.paid_amount.is_zero()
        assert updated.paid_amount == eur(100)
        assert applied == eur(100)

    def test_currency_mismatch(self):
        """Test a payment in another currency is refused"""
        with pytest.raises(ValidationError):
            apply_repayment(self.make_loan(), Money(Decimal('10'), Currency.USD), ON_TIME)

    def test_approved_loan_accepts_payment(self):
        """Test an approved loan becomes active on its first payment"""
        updated, _ = apply_repayment(self.make_loan(LoanStatus.APPROVED), eur(10), ON_TIME)
        assert updated.status == LoanStatus.ACTIVE
