'''
API endpoints for guardian balances, reconciliation and balance administration.
'''
from typing import Annotated, Any, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query

from ..database.db_enums import ActorRole, ReconciliationModeEnum
from ..models import guardians as guardian_models
from ..models import ledger as ledger_models
from ..models.token import Actor
from ..services.security import verify_token_and_get_actor, authorize_role
from ..services.guardian_service import GuardianService
from ..services.reconciliation_service import ReconciliationService


class GuardiansAPI:
    """
    A class to encapsulate endpoints for guardian hour balances.
    """
    def __init__(self):
        self.router = APIRouter(
            prefix="/guardians",
            tags=["Guardians"]
        )
        self._register_routes()

    def _register_routes(self):
        """Registers all the API routes for this class."""
        self.router.add_api_route(
            "/{guardian_id}/balance",
            self.get_balance,
            methods=["GET"],
            response_model=ledger_models.GuardianBalanceRead)
        self.router.add_api_route(
            "/{guardian_id}/recompute",
            self.recompute,
            methods=["POST"],
            response_model=ledger_models.ReconciliationResult)
        self.router.add_api_route(
            "/{guardian_id}/drift",
            self.detect_drift,
            methods=["GET"],
            response_model=ledger_models.DriftReport)
        self.router.add_api_route(
            "/{guardian_id}/hours/adjust",
            self.adjust_hours,
            methods=["POST"],
            response_model=ledger_models.BalanceChange)
        self.router.add_api_route(
            "/{guardian_id}/hours",
            self.set_hours,
            methods=["PUT"],
            response_model=ledger_models.BalanceChange)
        self.router.add_api_route(
            "/{guardian_id}/status",
            self.set_status,
            methods=["PATCH"],
            response_model=ledger_models.GuardianBalanceRead)
        self.router.add_api_route(
            "/{guardian_id}/close",
            self.close_account,
            methods=["POST"],
            response_model=ledger_models.GuardianBalanceRead)

    async def get_balance(
        self,
        guardian_id: UUID,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        guardian_service: Annotated[GuardianService, Depends(GuardianService)]
    ) -> Any:
        authorize_role(actor, [ActorRole.ADMIN, ActorRole.SYSTEM])
        return await guardian_service.get_balance(guardian_id)

    async def recompute(
        self,
        guardian_id: UUID,
        data: guardian_models.RecomputeInput,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        reconciliation_service: Annotated[ReconciliationService, Depends(ReconciliationService)]
    ) -> Any:
        """
        Recomputes the balance from classes and payments. Dry run by default.
        """
        authorize_role(actor, [ActorRole.ADMIN, ActorRole.SYSTEM])
        return await reconciliation_service.recompute_guardian_hours(guardian_id, data.mode, data.dry_run, actor)

    async def detect_drift(
        self,
        guardian_id: UUID,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        reconciliation_service: Annotated[ReconciliationService, Depends(ReconciliationService)],
        mode: Annotated[Optional[ReconciliationModeEnum], Query()] = None
    ) -> Any:
        authorize_role(actor, [ActorRole.ADMIN, ActorRole.SYSTEM])
        return await reconciliation_service.detect_drift(guardian_id, mode)

    async def adjust_hours(
        self,
        guardian_id: UUID,
        data: guardian_models.HoursAdjustInput,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        guardian_service: Annotated[GuardianService, Depends(GuardianService)]
    ) -> Any:
        authorize_role(actor, [ActorRole.ADMIN])
        return await guardian_service.adjust_hours(guardian_id, data.delta, data.reason, actor)

    async def set_hours(
        self,
        guardian_id: UUID,
        data: guardian_models.HoursSetInput,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        guardian_service: Annotated[GuardianService, Depends(GuardianService)]
    ) -> Any:
        authorize_role(actor, [ActorRole.ADMIN])
        return await guardian_service.set_hours(guardian_id, data.value, data.reason, actor, data.allow_negative)

    async def set_status(
        self,
        guardian_id: UUID,
        data: guardian_models.GuardianStatusInput,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        guardian_service: Annotated[GuardianService, Depends(GuardianService)]
    ) -> Any:
        authorize_role(actor, [ActorRole.ADMIN])
        await guardian_service.set_active(guardian_id, data.is_active, actor, data.reason)
        return await guardian_service.get_balance(guardian_id)

    async def close_account(
        self,
        guardian_id: UUID,
        actor: Annotated[Actor, Depends(verify_token_and_get_actor)],
        guardian_service: Annotated[GuardianService, Depends(GuardianService)],
        reason: Annotated[str | None, Query(max_length=500)] = None
    ) -> Any:
        """
        Zeroes the balance and deactivates the guardian.
        """
        authorize_role(actor, [ActorRole.ADMIN])
        return await guardian_service.close_account(guardian_id, actor, reason)

# Instantiate the class and export its router
guardians_api = GuardiansAPI()
router = guardians_api.router
