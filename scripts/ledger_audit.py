"""
Standalone scheduled audit job.

Marks past-due invoices as overdue and recomputes every active guardian's
hour balance from source records. Reconciliation is a dry run unless
`--apply` is given; guardians with unrepairable issues are reported and
skipped.

Usage:
    python scripts/ledger_audit.py [--apply] [--mode billing|students]

Without --mode, each guardian is reconciled in the mode its
auto_total_hours flag implies.
"""

import sys
import asyncio
import argparse
from typing import Optional
from pathlib import Path

# --- Path Setup ---
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.tutor_ledger_backend.common.config import settings
from src.tutor_ledger_backend.common.logger import log
from src.tutor_ledger_backend.database.engine import build_engine, build_session_factory
from src.tutor_ledger_backend.database.db_enums import ReconciliationModeEnum
from src.tutor_ledger_backend.models.token import Actor
from src.tutor_ledger_backend.services.audit_service import AuditService
from src.tutor_ledger_backend.services.balance_service import BalanceService
from src.tutor_ledger_backend.services.settings_service import SettingsService
from src.tutor_ledger_backend.services.invoice_service import InvoiceService
from src.tutor_ledger_backend.services.reconciliation_service import ReconciliationService


async def run_audit(mode: Optional[ReconciliationModeEnum], apply: bool) -> int:
    engine = build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    actor = Actor.system()
    failures = 0

    try:
        async with session_factory() as session:
            balance_service = BalanceService(db=session)
            audit_service = AuditService(db=session)
            invoice_service = InvoiceService(
                db=session,
                balance_service=balance_service,
                audit_service=audit_service,
                settings_service=SettingsService(balance_service=balance_service),
            )
            reconciliation_service = ReconciliationService(
                db=session, balance_service=balance_service, audit_service=audit_service
            )

            overdue = await invoice_service.mark_overdue_invoices()
            print(f"Invoices marked overdue: {len(overdue)}")

            results = await reconciliation_service.recompute_all_guardians(mode, dry_run=not apply, actor=actor)
            for result in results:
                if result.issues:
                    failures += 1
                    print(f"FAIL  {result.guardian_id}: {'; '.join(result.issues)}")
                elif result.drift != 0:
                    state = "fixed" if result.applied else "drift"
                    print(f"{state.upper():5} {result.guardian_id}: {result.previous_total_hours} -> {result.total_hours}")

            await session.commit()
            print(f"Guardians checked: {len(results)}, with issues: {failures}")
    finally:
        await engine.dispose()

    return failures


def main():
    parser = argparse.ArgumentParser(description="Run the scheduled ledger audit.")
    parser.add_argument("--apply", action="store_true", help="Write recomputed balances (default: dry run)")
    parser.add_argument(
        "--mode",
        choices=ReconciliationModeEnum.get_all_names(),
        default=None,
        help="Reconciliation mode (default: the one implied by each guardian's auto_total_hours flag)"
    )
    args = parser.parse_args()

    log.info(f"Ledger audit starting (mode={args.mode or 'implied'}, apply={args.apply}).")
    mode = ReconciliationModeEnum(args.mode) if args.mode else None
    failures = asyncio.run(run_audit(mode, args.apply))
    sys.exit(1 if failures else 0)


if __name__ == "__main__":
    main()
