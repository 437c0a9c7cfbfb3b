'''
API endpoints for the audit log.
'''
from typing import Annotated, Any
from uuid import UUID
from fastapi import APIRouter, Depends, Query

from ..database.db_enums import ActorRole, AuditActionEnum, AuditEntityEnum
from ..models import audit as audit_models
from ..models.token import Actor
from ..services.security import verify_token_and_get_actor, authorize_role
from ..services.audit_service import AuditService
from ..services.undo_service import UndoService


class AuditAPI:
    """
    A class to encapsulate endpoints for Audit Entries.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/audit",
            tags=["Audit"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
            "/",
            self.list_entries,
            methods=["GET"],
            response_model=list[audit_models.AuditEntryRead])
        self.router.add_api_route(
            "/{entry_id}/undo",
            self.undo_entry,
            methods=["POST"],
            response_model=audit_models.AuditEntryRead)

    async def list_entries(
        self,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        audit_service: Annotated[AuditService, Depends(AuditService)],
        entity_type: Annotated[AuditEntityEnum | None, Query()] = None,
        entity_id: Annotated[UUID | None, Query()] = None,
        guardian_id: Annotated[UUID | None, Query()] = None,
        action: Annotated[AuditActionEnum | None, Query()] = None,
        limit: Annotated[int, Query(ge=1, le=500)] = 100
    ) -> list[Any]:
        """
        Lists audit entries, newest first.
        """
        authorize_role(actor, [ActorRole.ADMIN])
        return await audit_service.list_entries(entity_type, entity_id, guardian_id, action, limit)

    async def undo_entry(
        self,
        entry_id: UUID,
        data: audit_models.UndoInput,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        undo_service: Annotated[UndoService, Depends(UndoService)]
    ) -> Any:
        authorize_role(actor, [ActorRole.ADMIN])
        return await undo_service.undo(entry_id, actor, data.reason)

# Instantiate the class and export its router
audit_api = AuditAPI()
router = audit_api.router
