from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    startDate: date
    endDate: date
    startTime: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    endTime: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    totalAmount: Optional[Decimal] = Field(default=None, gt=0)
    dailyRate: Optional[Decimal] = Field(default=None, gt=0)
    pricePeriod: Optional[Literal["HOURLY", "DAILY", "WEEKLY", "MONTHLY"]] = None
    maxRentalDays: Optional[int] = Field(default=None, ge=1, le=365)
    paymentMethod: Literal["REFERENCE", "RECEIPT", "WALLET"]
    paymentReference: Optional[str] = None
    renterLatitude: Optional[Decimal] = None
    renterLongitude: Optional[Decimal] = None
    renterAddress: Optional[str] = None
    hasPriority: bool = False
    priorityAmount: Optional[Decimal] = None


class RentalStatusUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["PENDING", "APPROVED", "PAID", "ACTIVE", "COMPLETED", "CANCELLED", "REJECTED"]


class PaymentReceiptUpload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    receiptUrl: str = Field(min_length=1, max_length=500)


class PaymentReceiptDecision(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    isApproved: bool
    rejectionReason: Optional[str] = None
