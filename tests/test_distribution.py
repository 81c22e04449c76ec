"""
Test suite for interest distribution

Tests the proportional split, exact rounding, retention when nobody has
savings, and that a loan's interest is only ever distributed once.
"""

import pytest
from decimal import Decimal

from core_savings.audit import AuditEventType
from core_savings.currency import Money, Currency
from core_savings.distribution import split_interest, InterestDistribution
from core_savings.errors import IntegrityError

from conftest import make_group


def eur(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.EUR)


class TestSplitInterest:
    """Test the largest remainder split"""

    def test_scenario_b(self):
        """Test 100 over savings of 1000 and 3000"""
        shares = split_interest(eur(100), {"a": eur(1000), "b": eur(3000)})
        assert shares == {"a": eur(25), "b": eur(75)}

    def test_remainder_goes_to_largest_fraction(self):
        """Test 100 over three equal savers sums exactly"""
        shares = split_interest(eur(100), {"a": eur(10), "b": eur(10), "c": eur(10)})
        assert sorted(s.amount for s in shares.values()) == [
            Decimal('33.33'), Decimal('33.33'), Decimal('33.34')
        ]
        assert sum(shares.values(), eur(0)) == eur(100)

    def test_deterministic_tie_break(self):
        """Test equal remainders favour the member id that sorts first"""
        shares = split_interest(eur('0.01'), {"b": eur(5), "a": eur(5)})
        assert shares == {"a": eur('0.01'), "b": eur(0)}

    def test_non_positive_savings_excluded(self):
        """Test members with zero or negative savings receive nothing"""
        shares = split_interest(eur(90), {"a": eur(300), "b": eur(0), "c": eur(-100)})
        assert shares == {"a": eur(90)}

    def test_nobody_saved(self):
        """Test an empty split when no member has savings"""
        assert split_interest(eur(50), {"a": eur(0)}) == {}

    def test_whole_unit_currency(self):
        """Test rounding to a zero-decimal currency"""
        ugx = Currency.UGX
        shares = split_interest(Money(Decimal('1000'), ugx), {
            "a": Money(Decimal('1'), ugx), "b": Money(Decimal('1'), ugx), "c": Money(Decimal('1'), ugx)
        })
        assert sum(s.amount for s in shares.values()) == Decimal('1000')
        assert max(s.amount for s in shares.values()) == Decimal('334')


class TestInterestDistributor:
    """Test distribution through loan repayment"""

    def test_scenario_b_end_to_end(self, group, saver):
        """Test interest is credited in proportion to savings"""
        a = saver(savings=1000)
        b = saver(savings=3000)
        loan = group.approve_loan(group.request_loan(a.id, 1000, 8).id)

        group.repay_loan(loan.id, 1100)

        assert group.get_member(a.id).interest_received == eur(25)
        assert group.get_member(b.id).interest_received == eur(75)
        distribution = group.get_interest_distribution(loan.id)
        assert distribution.borrower_id == a.id
        assert distribution.total_savings == eur(4000)
        assert distribution.retained.is_zero()
        assert distribution.allocations == {a.id: eur(25), b.id: eur(75)}

        events = group.audit_trail.get_all_events(AuditEventType.INTEREST_DISTRIBUTED)
        assert len(events) == 1
        assert events[0].entity_id == loan.id

    def test_savings_untouched(self, group, saver):
        """Test distribution credits interest, not savings"""
        a = saver(savings=1000)
        loan = group.approve_loan(group.request_loan(a.id, 1000, 8).id)
        group.repay_loan(loan.id, 1100)

        member = group.get_member(a.id)
        assert member.total_contributions == eur(1000)
        assert member.interest_received == eur(100)
        assert group.verify_integrity()["valid"]

    def test_retained_when_no_savings(self, group, saver):
        """Test interest is retained when total savings are zero at repayment"""
        a = saver(savings=1000)
        loan = group.approve_loan(group.request_loan(a.id, 1000, 8).id)
        group.adjust_balance(a.id, 0)

        group.repay_loan(loan.id, 1100)

        distribution = group.get_interest_distribution(loan.id)
        assert distribution.allocations == {}
        assert distribution.retained == eur(100)
        assert group.get_member(a.id).interest_received.is_zero()
        assert len(group.audit_trail.get_all_events(AuditEventType.INTEREST_RETAINED)) == 1

    def test_exactly_once(self, group, saver):
        """Test a second distribution of the same loan is refused"""
        a = saver(savings=1000)
        loan = group.approve_loan(group.request_loan(a.id, 1000, 8).id)
        repaid = group.repay_loan(loan.id, 1100)

        with pytest.raises(IntegrityError):
            with group.storage.atomic():
                group.distributor.distribute(repaid)
        assert group.get_member(a.id).interest_received == eur(100)

    def test_admins_excluded_by_default(self, group, saver):
        """Test only configured roles share interest"""
        a = saver(savings=1000)
        admin = saver(savings=5000, role="admin")
        loan = group.approve_loan(group.request_loan(a.id, 1000, 8).id)
        group.repay_loan(loan.id, 1100)

        assert group.get_member(a.id).interest_received == eur(100)
        assert group.get_member(admin.id).interest_received.is_zero()

    def test_configured_roles(self, saver):
        """Test branch leads share interest when configured"""
        leads_included = make_group(distribution_roles=["member", "branch_lead"])
        a = saver(savings=1000, target=leads_included)
        lead = saver(savings=3000, role="branch_lead", target=leads_included)
        loan = leads_included.approve_loan(leads_included.request_loan(a.id, 1000, 8).id)

        leads_included.repay_loan(loan.id, 1100)

        assert leads_included.get_member(a.id).interest_received == eur(25)
        assert leads_included.get_member(lead.id).interest_received == eur(75)
        leads_included.close()

    def test_record_round_trip(self, group, saver):
        """Test stored distributions reload with Money allocations"""
        a = saver(savings=1000)
        loan = group.approve_loan(group.request_loan(a.id, 1000, 8).id)
        group.repay_loan(loan.id, 1100)

        distribution = group.get_interest_distribution(loan.id)
        assert InterestDistribution.from_dict(distribution.to_dict()) == distribution
        assert group.distributor.list_distributions() == [distribution]
