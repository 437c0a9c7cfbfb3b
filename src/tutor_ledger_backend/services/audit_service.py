'''
Audit Log: append-only records of balance-affecting and status-changing actions.
'''
import enum
from datetime import timedelta
from typing import Annotated, Any, Optional
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.engine import get_db_session
from ..database import models as db_models
from ..database.models import utcnow
from ..database.db_enums import AuditActionEnum, AuditEntityEnum
from ..models.token import Actor
from ..common.config import settings
from ..common.exceptions import NotFoundError, StateConflictError
from ..common.logger import log


def to_jsonable(value: Any) -> Any:
    """Converts Decimals, UUIDs, enums and datetimes inside a snapshot to JSON-safe values."""
    if isinstance(value, enum.Enum):
        return value.value
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return str(value)


class AuditService:
    def __init__(self, db: Annotated[AsyncSession, Depends(get_db_session)]):
        self.db = db

    async def log_action(
        self,
        action: AuditActionEnum,
        entity_type: AuditEntityEnum,
        entity_id: UUID,
        actor: Actor,
        before: Optional[dict] = None,
        after: Optional[dict] = None,
        reason: Optional[str] = None,
        guardian_id: Optional[UUID] = None,
        metadata: Optional[dict] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        original_log_id: Optional[UUID] = None,
    ) -> db_models.AuditEntries:
        entry = db_models.AuditEntries(
            action=action.value,
            entity_type=entity_type.value,
            entity_id=entity_id,
            guardian_id=guardian_id,
            actor=actor.id,
            actor_role=actor.role.value,
            before=to_jsonable(before),
            after=to_jsonable(after),
            reason=reason[:500] if reason else None,
            meta=to_jsonable(metadata),
            success=success,
            error_message=error_message,
            original_log_id=original_log_id,
            timestamp=utcnow(),
        )
        self.db.add(entry)
        await self.db.flush()
        log.info(f"Audit {action.value} on {entity_type.value} {entity_id} by {actor.role.value}:{actor.id}.")
        return entry

    async def get_entry(self, entry_id: UUID) -> db_models.AuditEntries:
        entry = await self.db.get(db_models.AuditEntries, entry_id)
        if not entry:
            raise NotFoundError(f"Audit entry {entry_id} not found.", {"audit_entry_id": str(entry_id)})
        return entry

    async def list_entries(
        self,
        entity_type: Optional[AuditEntityEnum] = None,
        entity_id: Optional[UUID] = None,
        guardian_id: Optional[UUID] = None,
        action: Optional[AuditActionEnum] = None,
        limit: int = 100,
    ) -> list[db_models.AuditEntries]:
        """Entries newest first."""
        stmt = select(db_models.AuditEntries)
        if entity_type:
            stmt = stmt.filter(db_models.AuditEntries.entity_type == entity_type.value)
        if entity_id:
            stmt = stmt.filter(db_models.AuditEntries.entity_id == entity_id)
        if guardian_id:
            stmt = stmt.filter(db_models.AuditEntries.guardian_id == guardian_id)
        if action:
            stmt = stmt.filter(db_models.AuditEntries.action == action.value)
        stmt = stmt.order_by(db_models.AuditEntries.timestamp.desc()).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def is_undone(self, entry_id: UUID) -> bool:
        stmt = select(db_models.AuditEntries.id).filter(
            db_models.AuditEntries.action == AuditActionEnum.STATUS_UNDO.value,
            db_models.AuditEntries.original_log_id == entry_id,
        ).limit(1)
        result = await self.db.execute(stmt)
        return result.scalars().first() is not None

    async def check_undoable(self, entry: db_models.AuditEntries) -> None:
        """Raises StateConflictError unless `entry` may still be undone."""
        action = AuditActionEnum(entry.action)
        if not action.is_undoable():
            raise StateConflictError(
                f"Audit action '{action.value}' cannot be undone; use an adjustment instead.",
                {"audit_entry_id": str(entry.id)}
            )
        if await self.is_undone(entry.id):
            raise StateConflictError("This action has already been undone.", {"audit_entry_id": str(entry.id)})
        window = timedelta(hours=settings.AUDIT_UNDO_WINDOW_HOURS)
        if utcnow() - entry.timestamp > window:
            raise StateConflictError(
                f"Undo window of {settings.AUDIT_UNDO_WINDOW_HOURS} hours has expired.",
                {"audit_entry_id": str(entry.id)}
            )
