'''
API endpoints for class reports, status changes and deletion.
'''
from typing import Annotated, Any
from uuid import UUID
from fastapi import APIRouter, Depends, Query

from ..database.db_enums import ActorRole
from ..models import classes as class_models
from ..models.token import Actor
from ..services.security import verify_token_and_get_actor, authorize_role
from ..services.class_service import ClassService
from ..common.exceptions import ValidationError


class ClassesAPI:
    """
    A class to encapsulate endpoints for Classes.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/classes",
            tags=["Classes"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
            "/{class_id}/report",
            self.submit_report,
            methods=["POST"],
            response_model=class_models.ClassChangeResult)
        self.router.add_api_route(
            "/{class_id}/status",
            self.change_status,
            methods=["PATCH"],
            response_model=class_models.ClassChangeResult)
        self.router.add_api_route(
            "/{class_id}/state-changed",
            self.state_changed,
            methods=["POST"],
            response_model=class_models.ClassChangeResult)
        self.router.add_api_route(
            "/{class_id}",
            self.delete_class,
            methods=["DELETE"],
            response_model=class_models.ClassChangeResult)

    async def submit_report(
        self,
        class_id: UUID,
        data: class_models.ClassReportInput,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        class_service: Annotated[ClassService, Depends(ClassService)]
    ) -> Any:
        """
        Submits (or re-submits) the class report. Re-submitting with the same
        countable outcome does not move hours again.
        """
        authorize_role(actor, [ActorRole.TEACHER, ActorRole.ADMIN])
        return await class_service.submit_class_report(class_id, data, actor)

    async def change_status(
        self,
        class_id: UUID,
        data: class_models.ClassStatusChangeInput,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        class_service: Annotated[ClassService, Depends(ClassService)]
    ) -> Any:
        authorize_role(actor, [ActorRole.ADMIN])
        return await class_service.change_class_status(class_id, data.status, actor, data.reason)

    async def state_changed(
        self,
        class_id: UUID,
        data: class_models.ClassStateChangedInput,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        class_service: Annotated[ClassService, Depends(ClassService)]
    ) -> Any:
        """
        Save-hook called by the scheduling subsystem with the class as it was
        before and after its save.
        """
        authorize_role(actor, [ActorRole.SYSTEM, ActorRole.ADMIN])
        if data.current.id != class_id:
            raise ValidationError("Snapshot id does not match the path.", {"class_id": str(class_id)})
        return await class_service.on_class_state_changed(data.current, data.previous, actor)

    async def delete_class(
        self,
        class_id: UUID,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        class_service: Annotated[ClassService, Depends(ClassService)],
        reason: Annotated[str | None, Query(max_length=500)] = None
    ) -> Any:
        authorize_role(actor, [ActorRole.ADMIN])
        return await class_service.delete_class(class_id, actor, reason)

# Instantiate the class and export its router
classes_api = ClassesAPI()
router = classes_api.router
