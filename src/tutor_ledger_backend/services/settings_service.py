'''
Settings provider: a guardian's live hourly rate and transfer-fee policy.
Only drafts read these; published invoices use their frozen snapshot.
'''
from typing import Annotated
from uuid import UUID

from fastapi import Depends

from ..database import models as db_models
from ..database.db_enums import TransferFeeModeEnum
from ..models.guardians import GuardianFinancialSettings
from ..core.ledger import round_currency, to_decimal
from ..common.config import settings
from .balance_service import BalanceService


class SettingsService:
    def __init__(self, balance_service: Annotated[BalanceService, Depends(BalanceService)]):
        self.balance_service = balance_service

    @staticmethod
    def resolve(guardian: db_models.Guardians) -> GuardianFinancialSettings:
        rate = to_decimal(guardian.hourly_rate)
        if rate <= 0:
            rate = to_decimal(settings.DEFAULT_HOURLY_RATE)
        return GuardianFinancialSettings(
            hourly_rate=round_currency(rate),
            transfer_fee_mode=TransferFeeModeEnum(guardian.transfer_fee_mode or settings.DEFAULT_TRANSFER_FEE_MODE),
            transfer_fee_value=round_currency(
                guardian.transfer_fee_value if guardian.transfer_fee_value is not None else settings.DEFAULT_TRANSFER_FEE_VALUE
            ),
        )

    async def get_guardian_financials(self, guardian_id: UUID) -> GuardianFinancialSettings:
        guardian = await self.balance_service.get_guardian(guardian_id)
        return self.resolve(guardian)
