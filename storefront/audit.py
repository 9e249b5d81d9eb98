from typing import Any, Optional

from sqlalchemy.orm import Session

from . import models


def record(
    db: Session,
    actor_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id: Optional[int] = None,
    details: Optional[dict[str, Any]] = None,
) -> models.ActivityLog:
    """Append one activity log row to the caller's unit of work.

    The row is only added to the session, never committed here, so it lands
    in the same transaction as the mutation it describes.
    """
    entry = models.ActivityLog(
        user_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
    )
    db.add(entry)
    return entry
