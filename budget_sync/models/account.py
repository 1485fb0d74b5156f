from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum

# ===== ACCOUNT PYDANTIC MODELS =====

class AccountTypeEnum(str, Enum):
    DEPOSITORY = "DEPOSITORY"
    CREDIT = "CREDIT"
    LOAN = "LOAN"
    INVESTMENT = "INVESTMENT"
    OTHER = "OTHER"


class AccountSourceEnum(str, Enum):
    PLAID = "PLAID"
    MANUAL = "MANUAL"


class ManualAccountCreate(BaseModel):
    institution_name: str = Field(..., min_length=1, max_length=255, description="Bank name")
    institution_symbol: str = Field(..., pattern=r"^[A-Z]+$", max_length=20, description="Bank ticker-style symbol")
    name: str = Field(..., min_length=1, max_length=255, description="Account display name")
    account_type: str = Field("other", description="depository, credit, loan, investment or other")
    mask: Optional[str] = Field(None, pattern=r"^\d{4}$", description="Last four digits")
    balance_current: Optional[Decimal] = Field(None, description="Current balance")
    iso_currency_code: Optional[str] = Field(None, min_length=3, max_length=3)

    @field_validator('institution_name', 'name')
    @classmethod
    def validate_names(cls, v: str) -> str:
        return v.strip()

    @field_validator('balance_current')
    @classmethod
    def validate_balance(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        return round(v, 2) if v is not None else v


class FinAccountResponse(BaseModel):
    id: int
    source: AccountSourceEnum
    name: str
    official_name: Optional[str] = None
    mask: Optional[str] = None
    account_type: AccountTypeEnum
    account_subtype: Optional[str] = None
    balance_available: Optional[Decimal] = None
    balance_current: Optional[Decimal] = None
    iso_currency_code: str
    plaid_connection_item_id: Optional[int] = None
    manual_institution_id: Optional[int] = None
    created_at: datetime

    @field_validator('source', 'account_type', mode='before')
    @classmethod
    def validate_enums(cls, v):
        return getattr(v, "value", v)

    class Config:
        from_attributes = True


class BudgetFinAccountResponse(BaseModel):
    id: int
    budget_id: int
    fin_account_id: int

    class Config:
        from_attributes = True
