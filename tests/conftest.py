"""
Shared fixtures: an in-memory savings group and a factory for funded members
"""

from datetime import datetime, timezone

import pytest

from core_savings.config import SavingsConfig
from core_savings.group import SavingsGroup


# Deposits dated before the late cutoff
ON_TIME = datetime(2024, 3, 5, tzinfo=timezone.utc)


def make_group(**settings) -> SavingsGroup:
    settings.setdefault("storage_backend", "memory")
    settings.setdefault("lock_timeout_seconds", 2.0)
    return SavingsGroup(SavingsConfig(**settings))


@pytest.fixture
def group():
    savings_group = make_group()
    yield savings_group
    savings_group.close()


@pytest.fixture
def saver(group):
    """Register an approved member, optionally with savings deposited on time"""
    counter = {"n": 0}

    def create(savings=None, branch="blue", role="member", target=None):
        target = target or group
        counter["n"] += 1
        member = target.register_member(
            "Member", f"No{counter['n']}", f"member{counter['n']}@example.com",
            branch, role=role, auto_approve=True
        )
        if savings:
            target.append_contribution(member.id, savings, ON_TIME)
        return target.get_member(member.id)

    return create
