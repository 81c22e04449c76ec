"""
Shared API dependencies
"""

import threading
from typing import Optional

from ..group import SavingsGroup


_group: Optional[SavingsGroup] = None
_group_lock = threading.Lock()


def get_savings_group() -> SavingsGroup:
    """Return the process-wide SavingsGroup, built from configuration on first use"""
    global _group
    with _group_lock:
        if _group is None:
            _group = SavingsGroup()
        return _group
