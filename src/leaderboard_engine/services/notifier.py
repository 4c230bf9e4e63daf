"""Decide which rank changes and milestones are worth a webhook."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..integrations.webhooks import WebhookDispatcher
from .ranking import LeaderboardEntry

logger = logging.getLogger(__name__)

RANK_CHANGED = "rank_changed"
NEW_LEADER = "new_leader"
MILESTONE_REACHED = "milestone_reached"

_EVENT_NAMESPACE = uuid.UUID("6f1c2d4e-8b3a-4f57-9c1d-2a7e5b0c9d13")


def event_id(*parts: Any) -> str:
    """Stable id so downstream consumers can de-duplicate redeliveries."""

    return str(uuid.uuid5(_EVENT_NAMESPACE, "|".join(str(part) for part in parts)))


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    event: str
    timestamp: datetime
    data: Dict[str, Any]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event": self.event,
            "timestamp": self.timestamp.isoformat(),
            "data": dict(self.data),
        }


def rank_events(
    entries: Iterable[LeaderboardEntry],
    *,
    threshold: int,
    occurred_at: datetime,
    reference: str,
    has_previous: bool = True,
) -> List[WebhookEvent]:
    """Events for one freshly computed leaderboard.

    ``reference`` identifies the computation (e.g. the snapshot id) and feeds
    the event id. A new leader is only announced when there was a previous
    ranking to compare against.
    """

    events: List[WebhookEvent] = []
    for entry in entries:
        data = {
            "studentId": entry.student_id,
            "contextType": entry.context_type,
            "contextId": entry.context_id,
            "period": entry.period,
            "oldRank": entry.previous_rank,
            "newRank": entry.rank,
            "points": entry.points,
        }
        if entry.partition_key:
            data["partition"] = entry.partition_key
        delta = entry.rank_delta
        if delta is not None and abs(delta) >= threshold:
            events.append(
                WebhookEvent(
                    id=event_id(RANK_CHANGED, reference, entry.student_id),
                    event=RANK_CHANGED,
                    timestamp=occurred_at,
                    data={**data, "rankDelta": delta},
                )
            )
        if has_previous and entry.rank == 1 and entry.previous_rank != 1:
            events.append(
                WebhookEvent(
                    id=event_id(NEW_LEADER, reference, entry.student_id),
                    event=NEW_LEADER,
                    timestamp=occurred_at,
                    data=data,
                )
            )
    return events


def milestone_events(
    *,
    student_id: str,
    context_type: str,
    context_id: str,
    milestones: Iterable[int],
    points: int,
    occurred_at: datetime,
) -> List[WebhookEvent]:
    return [
        WebhookEvent(
            id=event_id(MILESTONE_REACHED, context_type, context_id, student_id, milestone),
            event=MILESTONE_REACHED,
            timestamp=occurred_at,
            data={
                "studentId": student_id,
                "contextType": context_type,
                "contextId": context_id,
                "oldRank": None,
                "newRank": None,
                "milestone": milestone,
                "points": points,
            },
        )
        for milestone in milestones
    ]


class WebhookNotifier:
    """Hands significant events to the transport without blocking callers."""

    def __init__(self, dispatcher: Optional[WebhookDispatcher]) -> None:
        self._dispatcher = dispatcher

    def emit(self, events: List[WebhookEvent]) -> List[WebhookEvent]:
        if events:
            logger.info("emitting %s webhook events", len(events))
            if self._dispatcher is not None:
                self._dispatcher.dispatch([event.to_payload() for event in events])
        return events

    def close(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.close()
