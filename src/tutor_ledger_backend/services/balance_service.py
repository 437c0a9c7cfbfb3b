'''
Balance Store.

Every mutation of a guardian's `total_hours` goes through here as a single
atomic UPDATE ... RETURNING, so the before/after pair handed to the audit log
comes from the same statement that changed the row.
'''
from decimal import Decimal
from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.engine import get_db_session
from ..database import models as db_models
from ..models.ledger import BalanceChange, GuardianBalanceRead, StudentBreakdown
from ..core.ledger import ZERO, round_hours, student_key, to_decimal
from ..common.exceptions import NotFoundError
from ..common.locks import guardian_locks
from ..common.logger import log


class BalanceService:
    def __init__(self, db: Annotated[AsyncSession, Depends(get_db_session)]):
        self.db = db

    async def get_guardian(self, guardian_id: UUID, for_update: bool = False) -> db_models.Guardians:
        stmt = select(db_models.Guardians).filter(db_models.Guardians.id == guardian_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        guardian = result.scalars().first()
        if not guardian:
            raise NotFoundError(f"Guardian {guardian_id} not found.", {"guardian_id": str(guardian_id)})
        return guardian

    async def get_balance(self, guardian_id: UUID) -> GuardianBalanceRead:
        guardian = await self.get_guardian(guardian_id)
        students = [
            StudentBreakdown(
                student_key=student_key(s.id, s.full_name),
                student_id=s.id,
                student_name=s.full_name or None,
                consumed_hours=ZERO,
                hours_remaining=round_hours(s.hours_remaining),
                stored_hours_remaining=round_hours(s.hours_remaining),
            )
            for s in guardian.students
        ]
        return GuardianBalanceRead(
            guardian_id=guardian.id,
            total_hours=round_hours(guardian.total_hours),
            auto_total_hours=guardian.auto_total_hours,
            cumulative_consumed_hours=round_hours(guardian.cumulative_consumed_hours),
            is_active=guardian.is_active,
            students=students,
        )

    async def apply_delta(
        self,
        guardian_id: UUID,
        delta: Decimal,
        consumed: Decimal = ZERO,
        auto_total_hours: Optional[bool] = None,
    ) -> BalanceChange:
        """
        Atomically adds `delta` to the guardian's balance.

        `consumed` (>= 0) is added to the all-time consumed counter in the same
        statement. Negative results are allowed: they represent debt.
        """
        delta = round_hours(delta)
        values = {"total_hours": db_models.Guardians.total_hours + delta}
        consumed = round_hours(consumed)
        if consumed > 0:
            values["cumulative_consumed_hours"] = db_models.Guardians.cumulative_consumed_hours + consumed
        if auto_total_hours is not None:
            values["auto_total_hours"] = auto_total_hours

        stmt = (
            update(db_models.Guardians)
            .where(db_models.Guardians.id == guardian_id)
            .values(**values)
            .returning(db_models.Guardians.total_hours)
        )
        async with guardian_locks.hold(guardian_id):
            result = await self.db.execute(stmt)
            row = result.first()
        if row is None:
            raise NotFoundError(f"Guardian {guardian_id} not found.", {"guardian_id": str(guardian_id)})

        after = round_hours(row[0])
        change = BalanceChange(guardian_id=guardian_id, delta=delta, before=round_hours(after - delta), after=after)
        log.info(f"Guardian {guardian_id} balance {change.before} -> {change.after} (delta {delta}).")
        return change

    async def set_total(
        self,
        guardian_id: UUID,
        value: Decimal,
        auto_total_hours: Optional[bool] = None,
    ) -> BalanceChange:
        """
        Overwrites the balance. The caller must hold `guardian_locks` for this
        guardian; the row is read FOR UPDATE in the same transaction.
        """
        guardian = await self.get_guardian(guardian_id, for_update=True)
        before = round_hours(guardian.total_hours)
        after = round_hours(value)
        guardian.total_hours = after
        if auto_total_hours is not None:
            guardian.auto_total_hours = auto_total_hours
        await self.db.flush()
        log.info(f"Guardian {guardian_id} balance set {before} -> {after}.")
        return BalanceChange(guardian_id=guardian_id, delta=round_hours(after - before), before=before, after=after)

    async def apply_student_delta(self, student_id: Optional[UUID], delta: Decimal) -> Optional[Decimal]:
        """Moves a student's hours_remaining by `delta`. Returns the new value, or None if no student."""
        if not student_id or to_decimal(delta) == 0:
            return None
        stmt = (
            update(db_models.Students)
            .where(db_models.Students.id == student_id)
            .values(hours_remaining=db_models.Students.hours_remaining + round_hours(delta))
            .returning(db_models.Students.hours_remaining)
        )
        result = await self.db.execute(stmt)
        row = result.first()
        if row is None:
            log.warning(f"Student {student_id} not found while applying hours delta {delta}.")
            return None
        return round_hours(row[0])
