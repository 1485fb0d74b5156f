from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime

from budget_sync.models.transaction import CanonicalTransaction
from budget_sync.models.account import FinAccountResponse

# ===== SYNC / IMPORT RESULT MODELS =====

class SkippedRecord(BaseModel):
    reference: Optional[str] = Field(None, description="Transaction id of the skipped record, when known")
    reason: str
    index: Optional[int] = Field(None, description="Position in the source (CSV row number, page offset)")


class PersistResult(BaseModel):
    inserted_count: int = 0
    skipped_count: int = 0
    updated_count: int = 0
    removed_count: int = 0
    # Newly visible transactions, date ascending
    inserted: List[CanonicalTransaction] = Field(default_factory=list)
    error: Optional[str] = None


class SyncResult(BaseModel):
    connection_id: int
    new_transaction_count: int = 0
    updated_count: int = 0
    removed_count: int = 0
    updated_cursor: str
    pages: int = 0
    skipped: List[SkippedRecord] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class MultiSyncResult(BaseModel):
    results: List[SyncResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> List[int]:
        return [r.connection_id for r in self.results if r.error is None]

    @property
    def failed(self) -> List[int]:
        return [r.connection_id for r in self.results if r.error is not None]

    @property
    def new_transaction_count(self) -> int:
        return sum(r.new_transaction_count for r in self.results)


class ConnectionResponse(BaseModel):
    id: int
    plaid_item_id: str
    institution_name: Optional[str] = None
    next_cursor: str
    last_synced_at: Optional[datetime] = None
    created_at: datetime
    fin_accounts: List[FinAccountResponse] = Field(default_factory=list)

    class Config:
        from_attributes = True


class CsvImportResult(BaseModel):
    inserted_count: int = 0
    duplicate_count: int = 0
    skipped: List[SkippedRecord] = Field(default_factory=list)
    created_accounts: List[FinAccountResponse] = Field(default_factory=list)
