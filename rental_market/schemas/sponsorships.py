from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class CreateSponsorshipDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: Decimal
    duration: int
    targetUserID: Optional[int] = None
    equipmentID: Optional[int] = None


class ExtendSponsorshipDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    additionalDays: int
    additionalAmount: Decimal


class SponsorshipStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["ACTIVE", "PAUSED", "EXPIRED", "CANCELLED"]
