"""
Tests for per-branch group rules
"""

import pytest
from decimal import Decimal

from core_savings.errors import ValidationError
from core_savings.rules import Branch, GroupRules, RulesTable, DEFAULT_GROUP_RULES, parse_branch


class TestGroupRules:
    """Test the default rule table"""

    def test_default_rules(self):
        """Test every branch lends 3x savings up to 25000"""
        table = RulesTable()
        for branch in Branch:
            rules = table.get_group_rules(branch)
            assert rules.max_loan_multiplier == Decimal('3')
            assert rules.max_loan_amount == Decimal('25000')

    def test_branch_rates_and_fees(self):
        """Test branch interest rates and penalty fees"""
        table = RulesTable()
        assert table.get_group_rules("blue").interest_rate == Decimal('0.10')
        assert table.get_group_rules("yellow").penalty_fee == Decimal('600')
        assert table.get_group_rules("red").interest_rate == Decimal('0.08')
        assert table.get_group_rules("purple").penalty_fee == Decimal('750')

    def test_branch_name_is_normalized(self):
        """Test case and whitespace are ignored"""
        assert parse_branch(" Blue ") == Branch.BLUE
        assert parse_branch(Branch.RED) == Branch.RED

    def test_unknown_branch(self):
        """Test an unknown branch raises ValidationError"""
        with pytest.raises(ValidationError) as exc_info:
            RulesTable().get_group_rules("green")
        assert exc_info.value.details["field_name"] == "branch"

    def test_custom_table(self):
        """Test a table restricted to one branch"""
        table = RulesTable({Branch.BLUE: GroupRules(2, 1000, '0.05', 10)})
        assert table.get_group_rules("blue").max_loan_amount == Decimal('1000')
        with pytest.raises(ValidationError):
            table.get_group_rules("red")

    def test_negative_values_rejected(self):
        """Test rules cannot be negative"""
        with pytest.raises(ValueError):
            GroupRules(Decimal('-1'), Decimal('100'), Decimal('0'), Decimal('0'))

    def test_to_dict(self):
        """Test serialization keeps decimals as strings"""
        assert DEFAULT_GROUP_RULES[Branch.BLUE].to_dict() == {
            'max_loan_multiplier': '3',
            'max_loan_amount': '25000',
            'interest_rate': '0.10',
            'penalty_fee': '500'
        }
