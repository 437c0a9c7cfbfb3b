'''
Bounded undo for manual status changes.

The entity is reverted to the entry's `before` state and a new `status_undo`
entry referencing the original is appended; the original is never touched.
'''
from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends

from ..database import models as db_models
from ..database.db_enums import AuditActionEnum, AuditEntityEnum, ClassStatusEnum
from ..models.token import Actor
from ..common.exceptions import StateConflictError
from ..common.logger import log
from .audit_service import AuditService
from .class_service import ClassService
from .guardian_service import GuardianService


class UndoService:
    def __init__(
        self,
        audit_service: Annotated[AuditService, Depends(AuditService)],
        class_service: Annotated[ClassService, Depends(ClassService)],
        guardian_service: Annotated[GuardianService, Depends(GuardianService)],
    ):
        self.audit_service = audit_service
        self.class_service = class_service
        self.guardian_service = guardian_service

    async def undo(self, entry_id: UUID, actor: Actor, reason: Optional[str] = None) -> db_models.AuditEntries:
        entry = await self.audit_service.get_entry(entry_id)
        await self.audit_service.check_undoable(entry)
        before, after = entry.before or {}, entry.after or {}
        action = AuditActionEnum(entry.action)

        if action == AuditActionEnum.CLASS_STATUS_CHANGE:
            target = ClassStatusEnum(before["status"])
            expected = ClassStatusEnum(after["status"])
            # fails with StateConflictError if the class moved on since
            await self.class_service.set_class_status(entry.entity_id, target, actor, expected_status=expected)
            entity_type = AuditEntityEnum.CLASS
        elif action == AuditActionEnum.GUARDIAN_STATUS_CHANGE:
            await self.guardian_service.apply_active(
                entry.entity_id, bool(before["is_active"]), expected=bool(after["is_active"])
            )
            entity_type = AuditEntityEnum.GUARDIAN
        else:
            raise StateConflictError(f"No undo handler for '{action.value}'.", {"audit_entry_id": str(entry.id)})

        undo_entry = await self.audit_service.log_action(
            AuditActionEnum.STATUS_UNDO, entity_type, entry.entity_id, actor,
            before=after,
            after=before,
            reason=reason or f"Undo of {action.value}",
            guardian_id=entry.guardian_id,
            metadata={"undone_action": action.value},
            original_log_id=entry.id,
        )
        log.info(f"Undid audit entry {entry.id} ({action.value}) on {entity_type.value} {entry.entity_id}.")
        return undo_entry
