"""
Recurring Scheduler Package

recurring.py holds the pure date arithmetic; processor.py applies it to
stored templates.
"""

from fintrack.scheduler.recurring import (
    MAX_PENDING_OCCURRENCES,
    add_period,
    is_due,
    next_occurrence,
    pending_occurrences,
)

__all__ = [
    "MAX_PENDING_OCCURRENCES",
    "add_period",
    "is_due",
    "next_occurrence",
    "pending_occurrences",
]
