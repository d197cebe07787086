"""Gorillionaire points, streak and weekly leaderboard ledger."""

__version__ = "0.1.0"
