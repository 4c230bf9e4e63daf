"""Scheduled maintenance jobs."""

from .scheduled import register_scheduler, run_recompute_audit, run_retention, run_snapshot_cycle

__all__ = ["register_scheduler", "run_recompute_audit", "run_retention", "run_snapshot_cycle"]
