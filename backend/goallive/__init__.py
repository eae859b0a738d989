"""goal.live: live next-goal-scorer wagering ledger and settlement engine."""

__version__ = "0.1.0"
__author__ = "goal.live Team"

__all__ = ["__version__", "__author__"]
