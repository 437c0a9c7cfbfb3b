from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from ..database.db_enums import ActorRole, AuditActionEnum, AuditEntityEnum


class AuditEntryRead(BaseModel):
    id: UUID
    action: AuditActionEnum
    entity_type: AuditEntityEnum
    entity_id: UUID
    guardian_id: Optional[UUID] = None
    actor: Optional[UUID] = None
    actor_role: ActorRole
    before: Optional[dict] = None
    after: Optional[dict] = None
    reason: Optional[str] = None
    metadata: Optional[dict] = Field(default=None, validation_alias="meta")
    success: bool
    error_message: Optional[str] = None
    original_log_id: Optional[UUID] = None
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class UndoInput(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
