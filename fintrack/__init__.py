"""
FinTrack - Source Package

The persistence and synchronization core of a household-finance tracker.

DESIGN PRINCIPLES:
1. Storage backends are interchangeable behind one contract
2. Backup before every destructive migration step
3. Local replica first, cloud second
4. Recurring instances are derived, never guessed
5. Failures are logged and reported, not swallowed
"""

__version__ = "2.0.0"
__author__ = "FinTrack Team"
