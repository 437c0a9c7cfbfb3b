'''
Guardian balance administration inputs.
'''
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from ..database.db_enums import ReconciliationModeEnum, TransferFeeModeEnum


class HoursAdjustInput(BaseModel):
    delta: Decimal
    reason: str = Field(min_length=1, max_length=500)


class HoursSetInput(BaseModel):
    value: Decimal
    reason: str = Field(min_length=1, max_length=500)
    allow_negative: bool = False


class GuardianStatusInput(BaseModel):
    is_active: bool
    reason: Optional[str] = Field(default=None, max_length=500)


class RecomputeInput(BaseModel):
    # None: the mode implied by the guardian's auto_total_hours flag
    mode: Optional[ReconciliationModeEnum] = None
    dry_run: bool = True


class GuardianFinancialSettings(BaseModel):
    """Live rate and transfer-fee policy for a guardian (global defaults applied)."""
    hourly_rate: Decimal
    transfer_fee_mode: TransferFeeModeEnum
    transfer_fee_value: Decimal
