"""
Tests for late-contribution penalty settlement
"""

import pytest
from decimal import Decimal
from datetime import date

from core_savings.audit import AuditEventType
from core_savings.contributions import ContributionType
from core_savings.currency import Money, Currency
from core_savings.errors import StateConflictError, NotFoundError, ValidationError
from core_savings.penalties import Penalty, PenaltyStatus

LATE = date(2024, 3, 15)


def eur(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.EUR)


class TestPayPenalty:
    """Test paying assessed penalties"""

    def late_member(self, group, saver):
        member = saver()
        group.append_contribution(member.id, 600, LATE)
        return member, group.list_penalties(member_id=member.id)[0]

    def test_pay(self, group, saver):
        """Test paying a penalty deducts the fee from savings"""
        member, penalty = self.late_member(group, saver)

        paid = group.pay_penalty(penalty.id, paid_by="admin-1")

        assert paid.status == PenaltyStatus.PAID
        assert paid.paid_by == "admin-1"
        assert paid.paid_date is not None
        assert group.get_member(member.id).total_contributions == eur(575)

        entry = [c for c in group.list_contributions(member_id=member.id) if c.reference_id == penalty.id]
        assert len(entry) == 1
        assert entry[0].amount == eur(-25)
        assert entry[0].contribution_type == ContributionType.PENALTY
        assert paid.payment_contribution_id == entry[0].id
        assert len(group.audit_trail.get_all_events(AuditEventType.PENALTY_PAID)) == 1

    def test_pay_twice(self, group, saver):
        """Test a paid penalty cannot be paid again"""
        member, penalty = self.late_member(group, saver)
        group.pay_penalty(penalty.id)

        with pytest.raises(StateConflictError):
            group.pay_penalty(penalty.id)
        assert group.get_member(member.id).total_contributions == eur(575)

    def test_unknown_penalty(self, group):
        """Test paying an unknown penalty"""
        with pytest.raises(NotFoundError):
            group.pay_penalty("missing")

    def test_unpaid_total_in_profile(self, group, saver):
        """Test unpaid fees are summed on the member profile"""
        member, penalty = self.late_member(group, saver)
        group.append_contribution(member.id, 100, date(2024, 4, 25))

        assert group.get_member_profile(member.id).unpaid_penalties == eur(50)
        group.pay_penalty(penalty.id)
        assert group.get_member_profile(member.id).unpaid_penalties == eur(25)

    def test_list_by_status(self, group, saver):
        """Test filtering penalties by status"""
        member, penalty = self.late_member(group, saver)
        group.append_contribution(member.id, 100, date(2024, 4, 25))
        group.pay_penalty(penalty.id)

        assert [p.id for p in group.list_penalties(status="paid")] == [penalty.id]
        assert len(group.list_penalties(status=PenaltyStatus.UNPAID)) == 1
        with pytest.raises(ValidationError):
            group.list_penalties(status="cancelled")

    def test_round_trip(self, group, saver):
        """Test a paid penalty reloads unchanged"""
        _, penalty = self.late_member(group, saver)
        paid = group.pay_penalty(penalty.id)
        assert Penalty.from_dict(paid.to_dict()) == group.penalty_manager.get_penalty(penalty.id)

    def test_fee_above_savings_refused(self, group, saver):
        """Test a fee larger than the member's savings cannot be paid"""
        saver(savings=1000)
        member = saver()
        group.append_contribution(member.id, 10, LATE)
        penalty = group.list_penalties(member_id=member.id)[0]

        with pytest.raises(ValidationError):
            group.pay_penalty(penalty.id)

        assert group.penalty_manager.get_penalty(penalty.id).status == PenaltyStatus.UNPAID
        assert group.get_member(member.id).total_contributions == eur(10)
        assert group.get_aggregate_report().total_paid_penalties.is_zero()
        shares = group.get_member_shares()
        assert sum(s.share_percentage for s in shares) == Decimal('100.00')
        assert all(s.share_percentage >= 0 for s in shares)

    def test_fee_payable_once_savings_cover_it(self, group, saver):
        """Test the same penalty can be paid after a further deposit"""
        member = saver()
        group.append_contribution(member.id, 10, LATE)
        penalty = group.list_penalties(member_id=member.id)[0]
        with pytest.raises(ValidationError):
            group.pay_penalty(penalty.id)

        group.append_contribution(member.id, 100, date(2024, 4, 2))
        group.pay_penalty(penalty.id)
        assert group.get_member(member.id).total_contributions == eur(85)
        assert group.verify_integrity()["valid"]


class TestWaivePenalty:
    """Test writing penalties off"""

    def late_member(self, group, saver):
        member = saver()
        group.append_contribution(member.id, 600, LATE)
        return member, group.list_penalties(member_id=member.id)[0]

    def test_waive(self, group, saver):
        """Test a waived penalty leaves savings and the ledger untouched"""
        member, penalty = self.late_member(group, saver)
        entries_before = len(group.list_contributions(member_id=member.id))

        waived = group.waive_penalty(penalty.id, waived_by="admin-1")

        assert waived.status == PenaltyStatus.WAIVED
        assert waived.waived_by == "admin-1"
        assert waived.waived_date is not None
        assert waived.payment_contribution_id is None
        assert group.get_member(member.id).total_contributions == eur(600)
        assert len(group.list_contributions(member_id=member.id)) == entries_before

        events = group.audit_trail.get_all_events(AuditEventType.PENALTY_WAIVED)
        assert len(events) == 1
        assert events[0].actor_id == "admin-1"

    def test_waived_penalty_not_counted(self, group, saver):
        """Test waived fees are neither unpaid nor collected"""
        member, penalty = self.late_member(group, saver)
        group.waive_penalty(penalty.id)

        assert group.get_member_profile(member.id).unpaid_penalties.is_zero()
        assert group.get_aggregate_report().total_paid_penalties.is_zero()
        assert [p.id for p in group.list_penalties(status="waived")] == [penalty.id]

    def test_waive_paid_penalty(self, group, saver):
        """Test a paid penalty cannot be waived"""
        member, penalty = self.late_member(group, saver)
        group.pay_penalty(penalty.id)

        with pytest.raises(StateConflictError):
            group.waive_penalty(penalty.id)
        assert group.penalty_manager.get_penalty(penalty.id).status == PenaltyStatus.PAID
        assert group.get_member(member.id).total_contributions == eur(575)

    def test_pay_waived_penalty(self, group, saver):
        """Test a waived penalty cannot be paid afterwards"""
        member, penalty = self.late_member(group, saver)
        group.waive_penalty(penalty.id)

        with pytest.raises(StateConflictError):
            group.pay_penalty(penalty.id)
        with pytest.raises(StateConflictError):
            group.waive_penalty(penalty.id)
        assert group.get_member(member.id).total_contributions == eur(600)

    def test_unknown_penalty(self, group):
        """Test waiving an unknown penalty"""
        with pytest.raises(NotFoundError):
            group.waive_penalty("missing")

    def test_round_trip(self, group, saver):
        """Test a waived penalty reloads unchanged"""
        _, penalty = self.late_member(group, saver)
        waived = group.waive_penalty(penalty.id, waived_by="admin-1")
        assert Penalty.from_dict(waived.to_dict()) == group.penalty_manager.get_penalty(penalty.id)
