"""Service layer exports."""

from . import (
	aggregation_service,
	bucketing,
	config_service,
	invalidation_bus,
	leaderboard_service,
	ledger_service,
	notifier,
	ranking,
	snapshot_service,
)

__all__ = [
	"aggregation_service",
	"bucketing",
	"config_service",
	"invalidation_bus",
	"leaderboard_service",
	"ledger_service",
	"notifier",
	"ranking",
	"snapshot_service",
]
