import json
import logging
from typing import Any

from sqlalchemy.orm import Session

from stockledger.core.id_utils import generate_shortuuid
from stockledger.core.observability import get_request_id
from stockledger.models.audit_log import AuditLog

logger = logging.getLogger("stockledger.audit")


def log_audit_event(
    db: Session,
    *,
    actor_user_id: str | None,
    action: str,
    target_type: str,
    target_id: str | None = None,
    metadata_json: dict[str, Any] | None = None,
) -> AuditLog:
    """Stage an audit row on the caller's session; it commits with the caller's unit of work."""
    event = AuditLog(
        id=generate_shortuuid(),
        actor_user_id=actor_user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        metadata_json=dict(metadata_json) if metadata_json else None,
    )
    db.add(event)
    logger.info(
        json.dumps(
            {
                "event": "audit",
                "request_id": get_request_id(),
                "action": action,
                "target_type": target_type,
                "target_id": target_id,
                "actor_user_id": actor_user_id,
            }
        )
    )
    return event
