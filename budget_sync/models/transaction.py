from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, date
from decimal import Decimal
from enum import Enum

from budget_sync.models.category import CategoryResponse

# ===== TRANSACTION PYDANTIC MODELS =====

class TransactionStatusEnum(str, Enum):
    PENDING = "pending"
    POSTED = "posted"


class TransactionSourceEnum(str, Enum):
    AGGREGATOR = "AGGREGATOR"
    MANUAL = "MANUAL"
    CSV = "CSV"


class CanonicalTransaction(BaseModel):
    """
    The single write shape shared by aggregator sync, manual entry and CSV import.

    Every field is always present; optional ones are explicitly None.
    """
    user_tx_id: str = Field(..., min_length=1, max_length=100, description="Dedup key, unique across all sources")
    plaid_tx_id: Optional[str] = Field(None, description="Aggregator's native transaction id")
    fin_account_id: int = Field(..., description="Owning account")
    source: TransactionSourceEnum
    transaction_date: date
    amount: Decimal = Field(..., description="Signed amount, positive for money leaving the account")
    iso_currency_code: str = Field(..., min_length=3, max_length=3)
    merchant_name: Optional[str] = None
    payee: Optional[str] = None
    status: TransactionStatusEnum = TransactionStatusEnum.POSTED
    category_label: Optional[str] = Field(None, description="Unresolved category label from the source")
    category_id: Optional[int] = Field(None, description="Resolved internal category, filled by the mapper pass")
    category_confidence: Optional[str] = None
    pending_transaction_id: Optional[str] = Field(None, description="Aggregator id of the pending row this one settles")
    raw_data: Optional[Dict[str, Any]] = None
    meta_data: Optional[Dict[str, Any]] = None
    tags: Optional[List[str]] = None

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        return round(v, 2)

    @field_validator('iso_currency_code')
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.upper()

    @field_validator('merchant_name', 'payee')
    @classmethod
    def validate_text(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = " ".join(v.split())
        return v or None


class ManualTransactionCreate(BaseModel):
    fin_account_id: int = Field(..., description="Manual or linked account the transaction belongs to")
    transaction_date: date = Field(..., description="Date of the transaction")
    amount: Decimal = Field(..., description="Signed transaction amount")
    category: str = Field(..., min_length=1, max_length=100, description="Category name")
    user_tx_id: Optional[str] = Field(None, max_length=100, description="Caller supplied id; generated when absent")
    merchant_name: Optional[str] = Field(None, max_length=255)
    payee: Optional[str] = Field(None, max_length=255)
    iso_currency_code: Optional[str] = Field(None, min_length=3, max_length=3)
    status: Optional[TransactionStatusEnum] = None
    tags: Optional[List[str]] = None

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        return round(v, 2)


class TransactionResponse(BaseModel):
    id: int
    user_tx_id: str
    plaid_tx_id: Optional[str] = None
    fin_account_id: int
    source: TransactionSourceEnum
    transaction_date: date
    amount: Decimal
    iso_currency_code: str
    merchant_name: Optional[str] = None
    payee: Optional[str] = None
    status: TransactionStatusEnum
    external_category: Optional[str] = None
    meta_data: Optional[Dict[str, Any]] = None
    tags: Optional[List[str]] = None
    created_at: datetime
    category: CategoryResponse

    @field_validator('source', 'status', mode='before')
    @classmethod
    def validate_enums(cls, v):
        return getattr(v, "value", v)

    class Config:
        from_attributes = True
