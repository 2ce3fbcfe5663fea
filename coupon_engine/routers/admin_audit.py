from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from coupon_engine.core.database import get_db
from coupon_engine.deps import require_admin_token
from coupon_engine.services.admin_audit import list_admin_actions

router = APIRouter(prefix="/api/admin/audit", tags=["admin-audit"])


class AdminAuditRead(BaseModel):
    id: int
    actor: str
    action: str
    entity_type: Optional[str]
    entity_id: Optional[int]
    meta: Optional[Dict[str, Any]]
    created_at: datetime


@router.get("", response_model=List[AdminAuditRead])
def list_audit_logs(
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    limit: int = Query(200, ge=1, le=500),
    _actor: str = Depends(require_admin_token),
    db: Session = Depends(get_db),
):
    return list_admin_actions(db, entity_type=entity_type, entity_id=entity_id, limit=limit)
