'''
Reconciliation Engine.

Recomputes a guardian's balance from source records (classes and invoice
payment logs), never from the previously stored balance, so applying twice in
a row yields the same result.

Known limitation: apply mode holds the process-local guardian lock and reads
the guardian row FOR UPDATE, but an incremental update committed by another
process between the aggregation reads and the write is overwritten. Run
batch reconciliation in low-traffic windows.
'''
import asyncio
from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.engine import get_db_session
from ..database import models as db_models
from ..database.db_enums import AuditActionEnum, AuditEntityEnum, ReconciliationModeEnum
from ..models.ledger import ClassRecord, DriftReport, InvoiceRecord, ReconciliationResult, StudentBreakdown
from ..models.token import Actor
from ..core.ledger import (
    ZERO,
    compute_consumed_hours,
    compute_credited_hours,
    compute_refunded_hours,
    find_rate_issues,
    round_hours,
    student_key,
)
from ..common.config import settings
from ..common.exceptions import ConsistencyError
from ..common.locks import guardian_locks
from ..common.logger import log
from .audit_service import AuditService
from .balance_service import BalanceService
from .settings_service import SettingsService

# last successful drift report per guardian, served when aggregation times out
_drift_cache: dict[UUID, DriftReport] = {}


def implied_mode(guardian: db_models.Guardians) -> ReconciliationModeEnum:
    """The mode the guardian's stored balance is kept in, per its `auto_total_hours` flag."""
    if guardian.auto_total_hours:
        return ReconciliationModeEnum.STUDENTS
    return ReconciliationModeEnum.BILLING


class ReconciliationService:
    def __init__(
        self,
        db: Annotated[AsyncSession, Depends(get_db_session)],
        balance_service: Annotated[BalanceService, Depends(BalanceService)],
        audit_service: Annotated[AuditService, Depends(AuditService)],
    ):
        self.db = db
        self.balance_service = balance_service
        self.audit_service = audit_service

    async def _load_classes(self, guardian_id: UUID) -> list[ClassRecord]:
        stmt = select(db_models.Classes).filter(
            db_models.Classes.guardian_id == guardian_id,
            db_models.Classes.deleted.is_(False),
        )
        result = await self.db.execute(stmt)
        return [ClassRecord.model_validate(c) for c in result.scalars().all()]

    async def _load_invoices(self, guardian_id: UUID) -> list[InvoiceRecord]:
        stmt = select(db_models.Invoices).filter(
            db_models.Invoices.guardian_id == guardian_id,
            db_models.Invoices.deleted.is_(False),
        )
        result = await self.db.execute(stmt)
        return [InvoiceRecord.model_validate(i) for i in result.scalars().all()]

    async def compute(self, guardian_id: UUID, mode: ReconciliationModeEnum) -> ReconciliationResult:
        """Dry-run computation; writes nothing."""
        guardian = await self.balance_service.get_guardian(guardian_id)
        fallback_rate = SettingsService.resolve(guardian).hourly_rate

        classes = await self._load_classes(guardian_id)
        invoices = await self._load_invoices(guardian_id)

        consumed = compute_consumed_hours(classes)
        credited = compute_credited_hours(invoices, fallback_rate)
        refunded = compute_refunded_hours(invoices)
        issues = find_rate_issues(invoices, fallback_rate)

        # one breakdown row per known student, plus any name-only keys from classes
        names = {}
        for record in classes:
            names.setdefault(student_key(record.student_id, record.student_name), record)
        per_student = []
        seen = set()
        for student in guardian.students:
            key = student_key(student.id, student.full_name)
            seen.add(key)
            student_consumed = consumed.per_student.get(key, ZERO)
            per_student.append(StudentBreakdown(
                student_key=key,
                student_id=student.id,
                student_name=student.full_name or None,
                consumed_hours=student_consumed,
                hours_remaining=round_hours(-student_consumed),
                stored_hours_remaining=round_hours(student.hours_remaining),
            ))
        for key, student_consumed in consumed.per_student.items():
            if key in seen:
                continue
            record = names.get(key)
            per_student.append(StudentBreakdown(
                student_key=key,
                student_id=record.student_id if record else None,
                student_name=record.student_name if record else None,
                consumed_hours=student_consumed,
                hours_remaining=round_hours(-student_consumed),
            ))

        if mode == ReconciliationModeEnum.BILLING:
            total_hours = round_hours(credited - refunded - consumed.total)
        else:
            total_hours = round_hours(sum((row.hours_remaining for row in per_student), ZERO))

        previous = round_hours(guardian.total_hours)
        return ReconciliationResult(
            guardian_id=guardian_id,
            mode=mode,
            dry_run=True,
            total_consumed=consumed.total,
            total_credited=credited,
            total_refunded=refunded,
            total_hours=total_hours,
            previous_total_hours=previous,
            drift=round_hours(total_hours - previous),
            per_student=per_student,
            issues=issues,
        )

    async def recompute_guardian_hours(
        self,
        guardian_id: UUID,
        mode: Optional[ReconciliationModeEnum] = None,
        dry_run: bool = True,
        actor: Optional[Actor] = None,
    ) -> ReconciliationResult:
        """
        Recomputes and, unless `dry_run`, writes the guardian's balance.

        Without a `mode`, the one implied by the guardian's flag is used.
        Apply mode raises ConsistencyError (carrying the dry-run result) when
        the source records hold something it cannot repair.
        """
        if dry_run:
            if mode is None:
                mode = implied_mode(await self.balance_service.get_guardian(guardian_id))
            return await self.compute(guardian_id, mode)

        actor = actor or Actor.system()
        async with guardian_locks.hold(guardian_id):
            guardian = await self.balance_service.get_guardian(guardian_id, for_update=True)
            if mode is None:
                mode = implied_mode(guardian)
            result = await self.compute(guardian_id, mode)
            if result.issues:
                log.error(f"Reconciliation of guardian {guardian_id} aborted: {result.issues}")
                raise ConsistencyError(
                    "Reconciliation found issues it cannot repair; nothing was written.",
                    result=result,
                    details={"guardian_id": str(guardian_id), "issues": result.issues},
                )

            change = await self.balance_service.set_total(
                guardian_id, result.total_hours,
                auto_total_hours=(mode == ReconciliationModeEnum.STUDENTS),
            )
            if mode == ReconciliationModeEnum.STUDENTS:
                guardian = await self.balance_service.get_guardian(guardian_id)
                by_id = {row.student_id: row for row in result.per_student if row.student_id}
                for student in guardian.students:
                    row = by_id.get(student.id)
                    student.hours_remaining = row.hours_remaining if row else ZERO
            await self.db.flush()

        await self.audit_service.log_action(
            AuditActionEnum.HOURS_RECONCILIATION, AuditEntityEnum.GUARDIAN, guardian_id, actor,
            before={"total_hours": change.before},
            after={"total_hours": change.after},
            guardian_id=guardian_id,
            reason=f"Reconciliation ({mode.value})",
            metadata={"mode": mode.value, "consumed": result.total_consumed,
                      "credited": result.total_credited, "refunded": result.total_refunded,
                      "drift": result.drift},
        )
        log.info(f"Reconciled guardian {guardian_id} ({mode.value}): {change.before} -> {change.after}.")
        return result.model_copy(update={"dry_run": False, "applied": True})

    async def recompute_all_guardians(
        self,
        mode: Optional[ReconciliationModeEnum] = None,
        dry_run: bool = True,
        actor: Optional[Actor] = None,
    ) -> list[ReconciliationResult]:
        """
        Batch form for the scheduled audit job, over all active guardians.
        Without a `mode`, each guardian is reconciled in its implied mode.
        A guardian failing with ConsistencyError is reported and the batch continues.
        """
        stmt = select(db_models.Guardians.id).filter(db_models.Guardians.is_active.is_(True))
        guardian_ids = (await self.db.execute(stmt)).scalars().all()

        results = []
        for guardian_id in guardian_ids:
            try:
                results.append(await self.recompute_guardian_hours(guardian_id, mode, dry_run, actor))
            except ConsistencyError as e:
                log.warning(f"Skipping guardian {guardian_id}: {e.message}")
                results.append(e.result)
        return results

    async def detect_drift(
        self,
        guardian_id: UUID,
        mode: Optional[ReconciliationModeEnum] = None,
        timeout: Optional[float] = None,
    ) -> DriftReport:
        """
        Compares the stored balance with a fresh recomputation. When the
        aggregation exceeds the timeout, the last cached report (or a default
        one) is returned marked `stale`.
        """
        guardian = await self.balance_service.get_guardian(guardian_id)
        if mode is None:
            mode = implied_mode(guardian)
        stored = round_hours(guardian.total_hours)
        timeout = timeout if timeout is not None else settings.AGGREGATION_TIMEOUT_SECONDS
        try:
            result = await asyncio.wait_for(self.compute(guardian_id, mode), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning(f"Drift check for guardian {guardian_id} timed out after {timeout}s; serving cached value.")
            cached = _drift_cache.get(guardian_id)
            if cached is not None:
                return cached.model_copy(update={"stale": True})
            return DriftReport(
                guardian_id=guardian_id,
                stored_total_hours=stored,
                computed_total_hours=stored,
                drift=ZERO,
                within_tolerance=True,
                auto_total_hours=guardian.auto_total_hours,
                mode=mode,
                stale=True,
            )

        drift = round_hours(result.total_hours - stored)
        report = DriftReport(
            guardian_id=guardian_id,
            stored_total_hours=stored,
            computed_total_hours=result.total_hours,
            drift=drift,
            within_tolerance=abs(drift) <= settings.HOURS_EPSILON,
            auto_total_hours=guardian.auto_total_hours,
            mode=mode,
        )
        _drift_cache[guardian_id] = report
        if not report.within_tolerance:
            log.warning(f"Guardian {guardian_id} drift {drift} (stored {stored}, computed {result.total_hours}).")
        return report
