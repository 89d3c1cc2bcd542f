from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app import events
from app.context import get_correlation_id
from app.crm.models import CRMActivity


logger = logging.getLogger("app.activity")

_PENDING_KEY = "pending_activity_events"


@dataclass(slots=True)
class ActivityLogger:
    """Append-only activity trail.

    Rows are written inside the caller's transaction. The matching `activity.recorded`
    events are held on the session until `publish_pending` runs after a commit, so a
    rolled-back saga never announces activities that did not happen.
    """

    def record(
        self,
        session: Session,
        *,
        entity_type: str,
        entity_id: Any,
        action: str,
        description: str,
        metadata: dict[str, Any] | None = None,
        actor_user_id: str | None = None,
    ) -> CRMActivity:
        activity = CRMActivity(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            description=description,
            metadata_json=metadata or {},
            actor_user_id=actor_user_id,
            correlation_id=get_correlation_id(),
        )
        session.add(activity)
        session.flush()
        session.info.setdefault(_PENDING_KEY, []).append(
            {
                "activity_id": str(activity.id),
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "action": action,
                "description": description,
                "metadata": metadata or {},
            }
        )
        return activity

    def publish_pending(self, session: Session) -> int:
        pending = session.info.pop(_PENDING_KEY, [])
        for payload in pending:
            events.publish("activity.recorded", payload)
        return len(pending)

    def discard_pending(self, session: Session) -> None:
        dropped = session.info.pop(_PENDING_KEY, [])
        if dropped:
            logger.info("activity.events_discarded", extra={"status": "rolled_back", "error": f"{len(dropped)} events"})

    def list_activities(
        self,
        session: Session,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        limit: int = 50,
    ) -> list[CRMActivity]:
        stmt = select(CRMActivity)
        if entity_type is not None:
            stmt = stmt.where(CRMActivity.entity_type == entity_type)
        if entity_id is not None:
            stmt = stmt.where(CRMActivity.entity_id == entity_id)
        return list(session.scalars(stmt.order_by(CRMActivity.created_at.desc()).limit(limit)).all())


activity_logger = ActivityLogger()
