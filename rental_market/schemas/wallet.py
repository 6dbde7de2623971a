from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateWalletDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    initialBalance: Decimal = Field(default=Decimal("0"), ge=0)


class CreateWalletTransactionDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    walletID: int
    type: Literal["DEPOSIT", "WITHDRAWAL", "PAYMENT", "REFUND", "PRIORITY_FEE", "PROMOTION_FEE", "COMMISSION", "BONUS"]
    amount: Decimal
    description: str = Field(min_length=1, max_length=500)
    reference: Optional[str] = None
    metadata: Optional[dict[str, str | int | float | bool | None]] = None


class ProxyPayDepositDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: Decimal = Field(gt=0)
    paymentMethod: str = Field(default="bank_transfer", min_length=1, max_length=50)
    phoneNumber: Optional[str] = None


class ProxyPayWithdrawalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    amount: Decimal = Field(gt=0)
    withdrawalMethod: str = Field(default="bank_transfer", min_length=1, max_length=50)
    accountNumber: str = Field(min_length=1)
    bankName: Optional[str] = None
