"""Per-context leaderboard configuration and partitioning rules."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import Any, List, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..core.config import Settings, get_settings
from ..core.errors import ConfigValidationError
from ..models import ContextType, LeaderboardConfigRecord, Period
from ..utils.datetime import utcnow
from .ranking import TieBreak

VISIBLE_COLUMNS = (
    "rank",
    "student",
    "points",
    "level",
    "achievements",
    "rank_change",
    "percentile",
    "improvement",
)
_PARTITION_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,63}$")


@dataclass
class LeaderboardConfig:
    context_type: ContextType
    context_id: str
    visible_columns: List[str] = field(default_factory=lambda: list(VISIBLE_COLUMNS))
    enabled_periods: List[Period] = field(default_factory=lambda: list(Period))
    default_period: Period = Period.WEEKLY
    partition_key: Optional[str] = None
    tie_break: TieBreak = TieBreak.EARLIEST_TIMESTAMP
    rank_change_threshold: int = 3
    point_milestones: List[int] = field(default_factory=list)

    @property
    def partitioned(self) -> bool:
        return bool(self.partition_key)


def default_config(
    context_type: ContextType,
    context_id: str,
    settings: Optional[Settings] = None,
) -> LeaderboardConfig:
    settings = settings or get_settings()
    return LeaderboardConfig(
        context_type=context_type,
        context_id=context_id,
        rank_change_threshold=settings.default_rank_change_threshold,
        point_milestones=sorted(set(settings.default_point_milestones)),
    )


def _from_record(record: LeaderboardConfigRecord) -> LeaderboardConfig:
    return LeaderboardConfig(
        context_type=record.context_type,
        context_id=record.context_id,
        visible_columns=list(record.visible_columns),
        enabled_periods=[Period(value) for value in record.enabled_periods],
        default_period=Period(record.default_period),
        partition_key=record.partition_key,
        tie_break=TieBreak(record.tie_break),
        rank_change_threshold=record.rank_change_threshold,
        point_milestones=list(record.point_milestones),
    )


def _get_record(session: Session, context_type: ContextType, context_id: str) -> Optional[LeaderboardConfigRecord]:
    stmt = select(LeaderboardConfigRecord).where(
        LeaderboardConfigRecord.context_type == context_type,
        LeaderboardConfigRecord.context_id == context_id,
    )
    return session.execute(stmt).scalar_one_or_none()


def has_config(session: Session, context_type: ContextType, context_id: str) -> bool:
    return _get_record(session, context_type, context_id) is not None


def get_config(
    session: Session,
    context_type: ContextType,
    context_id: str,
    settings: Optional[Settings] = None,
) -> LeaderboardConfig:
    """Stored configuration for the context, or defaults from settings."""

    record = _get_record(session, context_type, context_id)
    if record is None:
        return default_config(context_type, context_id, settings)
    return _from_record(record)


def _coerce(changes: Mapping[str, Any], current: LeaderboardConfig) -> LeaderboardConfig:
    try:
        updated = replace(current)
        if "visible_columns" in changes:
            updated.visible_columns = list(changes["visible_columns"])
        if "enabled_periods" in changes:
            updated.enabled_periods = [Period(value) for value in changes["enabled_periods"]]
        if "default_period" in changes:
            updated.default_period = Period(changes["default_period"])
        if "partition_key" in changes:
            updated.partition_key = changes["partition_key"] or None
        if "tie_break" in changes:
            updated.tie_break = TieBreak(changes["tie_break"])
        if "rank_change_threshold" in changes:
            updated.rank_change_threshold = int(changes["rank_change_threshold"])
        if "point_milestones" in changes:
            updated.point_milestones = [int(value) for value in changes["point_milestones"]]
    except (TypeError, ValueError) as exc:
        raise ConfigValidationError(f"Invalid configuration value: {exc}") from exc
    return updated


def validate_config(config: LeaderboardConfig) -> None:
    """Reject configurations that could not be applied consistently."""

    unknown = [column for column in config.visible_columns if column not in VISIBLE_COLUMNS]
    if unknown:
        raise ConfigValidationError(f"Unknown visible columns: {', '.join(unknown)}.")
    if not config.visible_columns:
        raise ConfigValidationError("At least one column must be visible.")
    if len(set(config.visible_columns)) != len(config.visible_columns):
        raise ConfigValidationError("Visible columns must not repeat.")
    if not config.enabled_periods:
        raise ConfigValidationError("At least one period must be enabled.")
    if len(set(config.enabled_periods)) != len(config.enabled_periods):
        raise ConfigValidationError("Enabled periods must not repeat.")
    if config.default_period not in config.enabled_periods:
        raise ConfigValidationError(
            f"Default period {config.default_period.value} is not among the enabled periods."
        )
    if config.partition_key is not None and not _PARTITION_KEY.match(config.partition_key):
        raise ConfigValidationError(
            "Partition key must be an attribute name of letters, digits and underscores."
        )
    if config.rank_change_threshold < 1:
        raise ConfigValidationError("Rank change threshold must be at least 1.")
    if any(value <= 0 for value in config.point_milestones):
        raise ConfigValidationError("Point milestones must be positive.")
    if len(set(config.point_milestones)) != len(config.point_milestones):
        raise ConfigValidationError("Point milestones must not repeat.")


def update_config(
    session: Session,
    context_type: ContextType,
    context_id: str,
    changes: Mapping[str, Any],
    settings: Optional[Settings] = None,
) -> Tuple[LeaderboardConfig, bool]:
    """Validate and persist a partial update.

    Returns the new configuration and whether aggregates must be rebuilt
    (enabled periods or partitioning changed).
    """

    current = get_config(session, context_type, context_id, settings)
    updated = _coerce(changes, current)
    updated.point_milestones = sorted(updated.point_milestones)
    validate_config(updated)

    rebuild = (
        set(updated.enabled_periods) != set(current.enabled_periods)
        or updated.partition_key != current.partition_key
    )

    record = _get_record(session, context_type, context_id)
    if record is None:
        record = LeaderboardConfigRecord(context_type=context_type, context_id=context_id)
        session.add(record)
    record.visible_columns = list(updated.visible_columns)
    record.enabled_periods = [period.value for period in updated.enabled_periods]
    record.default_period = updated.default_period.value
    record.partition_key = updated.partition_key
    record.tie_break = updated.tie_break.value
    record.rank_change_threshold = updated.rank_change_threshold
    record.point_milestones = list(updated.point_milestones)
    record.updated_at = utcnow()
    session.flush()
    return updated, rebuild


def configured_contexts(session: Session) -> List[Tuple[ContextType, str]]:
    stmt = select(LeaderboardConfigRecord.context_type, LeaderboardConfigRecord.context_id)
    return [(context_type, context_id) for context_type, context_id in session.execute(stmt)]
