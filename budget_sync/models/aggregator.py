from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from decimal import Decimal

# ===== AGGREGATOR BOUNDARY MODELS =====

class SyncPage(BaseModel):
    """One page of a cursor-based transaction delta."""
    added: List[Dict[str, Any]] = Field(default_factory=list)
    modified: List[Dict[str, Any]] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list, description="Aggregator transaction ids")
    has_more: bool = False
    next_cursor: str = Field(..., description="Cursor to request the page after this one")


class TokenExchange(BaseModel):
    access_token: str
    item_id: str


class AggregatorAccount(BaseModel):
    account_id: str
    name: str
    official_name: Optional[str] = None
    mask: Optional[str] = None
    type: Optional[str] = None
    subtype: Optional[str] = None
    balance_available: Optional[Decimal] = None
    balance_current: Optional[Decimal] = None
    iso_currency_code: Optional[str] = None


class AggregatorInstitution(BaseModel):
    institution_id: str
    name: str
    logo: Optional[str] = None


class ConnectionCreate(BaseModel):
    public_token: str = Field(..., min_length=1, description="Short-lived token from the link flow")
    budget_id: Optional[int] = Field(None, description="Budget to link the new accounts to")
