"""Leaderboard ranking and points aggregation engine."""

__version__ = "0.1.0"
