import json
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import AdminActionLogRow
from .models import AdminActionLog


class AdminAuditLog:
    """Who did what from the admin console. Written in the same transaction as the action."""

    def __init__(self, session: Session):
        self.session = session

    def log(
        self,
        admin_user_id: int,
        action: str,
        target_user_id: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        self.session.add(AdminActionLogRow(
            admin_user_id=admin_user_id,
            action=action,
            target_user_id=target_user_id,
            metadata_json=json.dumps(metadata, sort_keys=True) if metadata else None,
        ))
        self.session.flush()

    def list_actions(self, limit: int = 100) -> list[AdminActionLog]:
        query = (
            select(AdminActionLogRow)
            .order_by(AdminActionLogRow.created_at.desc(), AdminActionLogRow.id.desc())
            .limit(limit)
        )
        return [AdminActionLog.model_validate(row) for row in self.session.scalars(query)]
