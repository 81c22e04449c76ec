"""
Group Savings Core

Loan lifecycle, interest distribution and contribution/penalty ledger for a
member savings group, with Decimal money handling and a hash-chained audit
trail.
"""

__version__ = "1.0.0"
