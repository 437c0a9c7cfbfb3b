'''
Guardian balance administration: manual corrections, activation and closing.
'''
from decimal import Decimal
from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.engine import get_db_session
from ..database import models as db_models
from ..database.db_enums import AuditActionEnum, AuditEntityEnum
from ..models.ledger import BalanceChange, GuardianBalanceRead
from ..models.token import Actor
from ..core.ledger import ZERO, round_hours, to_decimal
from ..common.exceptions import StateConflictError, ValidationError
from ..common.locks import guardian_locks
from ..common.logger import log
from .audit_service import AuditService
from .balance_service import BalanceService


class GuardianService:
    def __init__(
        self,
        db: Annotated[AsyncSession, Depends(get_db_session)],
        balance_service: Annotated[BalanceService, Depends(BalanceService)],
        audit_service: Annotated[AuditService, Depends(AuditService)],
    ):
        self.db = db
        self.balance_service = balance_service
        self.audit_service = audit_service

    async def get_balance(self, guardian_id: UUID) -> GuardianBalanceRead:
        return await self.balance_service.get_balance(guardian_id)

    async def adjust_hours(self, guardian_id: UUID, delta: Decimal, reason: str, actor: Actor) -> BalanceChange:
        """Adds `delta` hours and pins the balance as manually managed."""
        delta = round_hours(delta)
        if delta == 0:
            raise ValidationError("Adjustment delta must be non-zero.", {"delta": str(delta)})
        change = await self.balance_service.apply_delta(guardian_id, delta, auto_total_hours=False)
        await self.audit_service.log_action(
            AuditActionEnum.HOURS_MANUAL_ADJUST, AuditEntityEnum.GUARDIAN, guardian_id, actor,
            before={"total_hours": change.before},
            after={"total_hours": change.after},
            reason=reason,
            guardian_id=guardian_id,
            metadata={"delta": delta, "operation": "adjust"},
        )
        return change

    async def set_hours(
        self,
        guardian_id: UUID,
        value: Decimal,
        reason: str,
        actor: Actor,
        allow_negative: bool = False,
    ) -> BalanceChange:
        value = round_hours(value)
        if value < 0 and not allow_negative:
            raise ValidationError(
                "Refusing to set a negative balance without allow_negative.", {"value": str(value)}
            )
        async with guardian_locks.hold(guardian_id):
            change = await self.balance_service.set_total(guardian_id, value, auto_total_hours=False)
        await self.audit_service.log_action(
            AuditActionEnum.HOURS_MANUAL_ADJUST, AuditEntityEnum.GUARDIAN, guardian_id, actor,
            before={"total_hours": change.before},
            after={"total_hours": change.after},
            reason=reason,
            guardian_id=guardian_id,
            metadata={"operation": "set", "allow_negative": allow_negative},
        )
        return change

    async def apply_active(
        self,
        guardian_id: UUID,
        active: bool,
        expected: Optional[bool] = None,
    ) -> tuple[db_models.Guardians, bool]:
        """Sets `is_active`; returns the guardian and its previous flag."""
        guardian = await self.balance_service.get_guardian(guardian_id, for_update=True)
        previous = guardian.is_active
        if expected is not None and previous != expected:
            raise StateConflictError(
                f"Guardian is_active is {previous}, expected {expected}.",
                {"guardian_id": str(guardian_id)}
            )
        guardian.is_active = active
        await self.db.flush()
        return guardian, previous

    async def set_active(
        self,
        guardian_id: UUID,
        active: bool,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> db_models.Guardians:
        guardian, previous = await self.apply_active(guardian_id, active)
        if previous != active:
            await self.audit_service.log_action(
                AuditActionEnum.GUARDIAN_STATUS_CHANGE, AuditEntityEnum.GUARDIAN, guardian_id, actor,
                before={"is_active": previous},
                after={"is_active": active},
                reason=reason,
                guardian_id=guardian_id,
            )
            log.info(f"Guardian {guardian_id} is_active {previous} -> {active}.")
        return guardian

    async def close_account(self, guardian_id: UUID, actor: Actor, reason: Optional[str] = None) -> GuardianBalanceRead:
        """Zeroes the balance and deactivates the guardian. Nothing is deleted."""
        reason = reason or "Account closed"
        async with guardian_locks.hold(guardian_id):
            change = await self.balance_service.set_total(guardian_id, ZERO, auto_total_hours=False)
        if to_decimal(change.before) != 0:
            await self.audit_service.log_action(
                AuditActionEnum.HOURS_MANUAL_ADJUST, AuditEntityEnum.GUARDIAN, guardian_id, actor,
                before={"total_hours": change.before},
                after={"total_hours": change.after},
                reason=reason,
                guardian_id=guardian_id,
                metadata={"operation": "close"},
            )
        await self.set_active(guardian_id, False, actor, reason)
        return await self.balance_service.get_balance(guardian_id)
