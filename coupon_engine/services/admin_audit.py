from __future__ import annotations

import json
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from coupon_engine.models.admin_audit_log import AdminAuditLog


def log_admin_action(
    db: Session,
    *,
    actor: str,
    action: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    meta: Optional[Mapping[str, Any]] = None,
) -> AdminAuditLog:
    entry = AdminAuditLog(
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        meta_json=json.dumps(meta, default=str) if meta else None,
    )
    db.add(entry)
    return entry


def list_admin_actions(
    db: Session,
    *,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    query = db.query(AdminAuditLog)
    if entity_type:
        query = query.filter(AdminAuditLog.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AdminAuditLog.entity_id == entity_id)
    rows = query.order_by(AdminAuditLog.created_at.desc(), AdminAuditLog.id.desc()).limit(limit).all()

    results: list[dict[str, Any]] = []
    for entry in rows:
        meta = None
        if entry.meta_json:
            try:
                meta = json.loads(entry.meta_json)
            except json.JSONDecodeError:
                meta = {"raw": entry.meta_json}
        results.append(
            {
                "id": entry.id,
                "actor": entry.actor,
                "action": entry.action,
                "entity_type": entry.entity_type,
                "entity_id": entry.entity_id,
                "meta": meta,
                "created_at": entry.created_at,
            }
        )
    return results
