from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from sqlalchemy.orm import Session

from app.errors import ServiceResult
from app.models import AuditActorType, AuditLog

logger = logging.getLogger("app.audit")


def _client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    if request.client is None:
        return None
    return request.client.host


def log_audit(
    db: Session,
    *,
    actor_type: AuditActorType,
    actor_id: str,
    action: str,
    success: bool,
    entity_type: str | None = None,
    entity_id: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> None:
    """Persist one audit row in its own commit. Write failures are logged, never raised."""
    row = AuditLog(
        ts_utc=datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        ip=ip,
        user_agent=user_agent,
        success=success,
        details=details or {},
    )
    try:
        db.add(row)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "audit_log_write_failed",
            extra={
                "request_id": request_id,
                "action": action,
                "actor_type": actor_type.value,
                "actor_id": actor_id,
                "success": success,
            },
        )
        return

    logger.info(
        "audit_event",
        extra={
            "request_id": request_id,
            "action": action,
            "actor_type": actor_type.value,
            "actor_id": actor_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "success": success,
            "details": details or {},
        },
    )


def log_identity_event(
    db: Session,
    request: Request,
    *,
    action: str,
    result: ServiceResult,
    actor_type: AuditActorType = AuditActorType.SYSTEM,
    actor_id: str = "anonymous",
    entity_id: int | str | None = None,
) -> None:
    details: dict[str, Any] = {}
    if result.kind is not None:
        details["reason"] = result.kind.value

    log_audit(
        db,
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        success=result.success,
        entity_type="account" if entity_id is not None else None,
        entity_id=str(entity_id) if entity_id is not None else None,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
        details=details,
        request_id=getattr(request.state, "request_id", None),
    )
