import json
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from backoffice import models

logger = logging.getLogger("backoffice")


def audit_event(
    action: str,
    user_id: Optional[int],
    payload: Dict[str, Any],
    *,
    db: Session,
    deal_id: int | None = None,
    idempotency_key: str | None = None,
    request_id: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
) -> Optional[int]:
    """Record an audit event inside the caller's transaction.

    The row is flushed, not committed: it lands or rolls back together with the
    state change it describes. Returns the audit log id (the existing one when the
    idempotency key was already recorded).
    """

    if idempotency_key:
        existing = (
            db.query(models.AuditLog)
            .filter(models.AuditLog.idempotency_key == idempotency_key)
            .first()
        )
        if existing is not None:
            return existing.id

    log = models.AuditLog(
        action=action,
        user_id=user_id,
        deal_id=deal_id,
        payload_json=json.dumps(payload or {}, default=str, sort_keys=True),
        idempotency_key=idempotency_key,
        request_id=request_id,
        ip=ip,
        user_agent=user_agent,
    )
    db.add(log)
    db.flush()
    logger.info("audit_event", extra={"action": action, "deal_id": deal_id, "user_id": user_id})
    return log.id
