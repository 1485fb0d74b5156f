"""
Idempotent transaction writes keyed on ``user_tx_id``.

Every ingestion source funnels through ``TransactionPersister``. Inserts are
insert-or-skip: a row whose dedup key (or aggregator id) is already stored
is left untouched so the first-seen version and any edits made to it win.
"""
import os
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import insert as generic_insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from budget_sync.db.core import TransactionDB, TransactionSource, TransactionStatus
from budget_sync.models.sync import PersistResult
from budget_sync.models.transaction import CanonicalTransaction, TransactionStatusEnum
from budget_sync.logging_config import get_logger

logger = get_logger(__name__)

SYNC_BATCH_SIZE = int(os.getenv("SYNC_BATCH_SIZE", "100"))
SYNC_BATCH_DELAY_MS = int(os.getenv("SYNC_BATCH_DELAY_MS", "100"))

_DIALECT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


class PersistenceError(Exception):
    """A batch could not be written. Earlier batches stay committed."""

    def __init__(self, message: str, batch_number: Optional[int] = None, result: Optional[PersistResult] = None):
        super().__init__(message)
        self.batch_number = batch_number
        # What did make it in before the failure
        self.result = result


def dedupe_by_user_tx_id(transactions: Iterable[CanonicalTransaction]) -> Tuple[List[CanonicalTransaction], int]:
    """First occurrence of each ``user_tx_id`` wins. Returns (unique, dropped_count)."""
    seen: Set[str] = set()
    unique = []
    dropped = 0
    for tx in transactions:
        if tx.user_tx_id in seen:
            dropped += 1
            continue
        seen.add(tx.user_tx_id)
        unique.append(tx)
    return unique, dropped


class TransactionPersister:

    def __init__(self, db: Session, user_id: int, batch_size: int = SYNC_BATCH_SIZE,
                 batch_delay: float = SYNC_BATCH_DELAY_MS / 1000.0):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.db = db
        self.user_id = user_id
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    # ===== INSERT OR SKIP =====

    def persist(self, transactions: List[CanonicalTransaction]) -> PersistResult:
        """
        Insert ``transactions``, skipping any whose key is already stored.

        Every record must carry a resolved ``category_id``. Each batch commits
        on its own; the first failing batch is rolled back and raised as
        ``PersistenceError``.
        """
        unresolved = [tx.user_tx_id for tx in transactions if tx.category_id is None]
        if unresolved:
            raise ValueError(f"Transactions without a resolved category: {', '.join(unresolved[:5])}")

        unique, dropped = dedupe_by_user_tx_id(transactions)
        result = PersistResult(skipped_count=dropped)
        if not unique:
            return result

        batches = [unique[i:i + self.batch_size] for i in range(0, len(unique), self.batch_size)]
        inserted: List[CanonicalTransaction] = []

        for batch_number, batch in enumerate(batches, start=1):
            try:
                inserted_ids = self._insert_batch(batch)
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Batch {batch_number}/{len(batches)} failed for user {self.user_id}: {e}")
                result.inserted = _sorted_by_date(inserted)
                result.inserted_count = len(inserted)
                result.error = f"Failed to persist transactions batch {batch_number}"
                raise PersistenceError(result.error, batch_number=batch_number, result=result) from e

            batch_inserted = [tx for tx in batch if tx.user_tx_id in inserted_ids]
            inserted.extend(batch_inserted)
            result.skipped_count += len(batch) - len(batch_inserted)
            logger.debug(f"Batch {batch_number}/{len(batches)}: {len(batch_inserted)} inserted, {len(batch) - len(batch_inserted)} already present")

            if self.batch_delay > 0 and batch_number < len(batches):
                time.sleep(self.batch_delay)

        result.inserted = _sorted_by_date(inserted)
        result.inserted_count = len(inserted)
        logger.info(f"Persisted {result.inserted_count} transactions, skipped {result.skipped_count}")
        return result

    def _insert_batch(self, batch: List[CanonicalTransaction]) -> Set[str]:
        rows = [self._to_row(tx) for tx in batch]
        dialect_insert = _DIALECT_INSERTS.get(self.db.get_bind().dialect.name)
        if dialect_insert is None:
            return self._insert_rows_one_by_one(rows)

        stmt = (
            dialect_insert(TransactionDB)
            .values(rows)
            .on_conflict_do_nothing()
            .returning(TransactionDB.user_tx_id)
        )
        return set(self.db.execute(stmt).scalars().all())

    def _insert_rows_one_by_one(self, rows: List[Dict[str, Any]]) -> Set[str]:
        """Stores without ON CONFLICT: a savepoint per row keeps siblings alive."""
        inserted = set()
        for row in rows:
            try:
                with self.db.begin_nested():
                    self.db.execute(generic_insert(TransactionDB).values(**row))
                inserted.add(row["user_tx_id"])
            except IntegrityError:
                continue
        return inserted

    def _to_row(self, tx: CanonicalTransaction) -> Dict[str, Any]:
        now = datetime.utcnow()
        return {
            "user_id": self.user_id,
            "fin_account_id": tx.fin_account_id,
            "category_id": tx.category_id,
            "user_tx_id": tx.user_tx_id,
            "plaid_tx_id": tx.plaid_tx_id,
            "source": TransactionSource(tx.source.value),
            "transaction_date": tx.transaction_date,
            "amount": tx.amount,
            "iso_currency_code": tx.iso_currency_code,
            "merchant_name": tx.merchant_name,
            "payee": tx.payee,
            "status": TransactionStatus(tx.status.value),
            "external_category": tx.category_label,
            "category_confidence": tx.category_confidence,
            "raw_data": tx.raw_data,
            "meta_data": tx.meta_data,
            "tags": tx.tags,
            "created_at": now,
            "updated_at": now,
        }

    # ===== AGGREGATOR DELTAS =====

    def update_pending_to_posted(self, transactions: List[CanonicalTransaction]) -> Tuple[int, List[CanonicalTransaction]]:
        """
        Settle stored pending rows in place.

        A posted transaction whose ``pending_transaction_id`` matches a stored
        pending row takes over that row (status, amount, date, aggregator id)
        so edits made while it was pending survive. Returns the number of rows
        settled and the transactions that still need inserting.
        """
        settled = 0
        remaining = []
        try:
            for tx in transactions:
                if not tx.pending_transaction_id or tx.status != TransactionStatusEnum.POSTED:
                    remaining.append(tx)
                    continue

                pending_row = self.db.query(TransactionDB).filter(
                    TransactionDB.plaid_tx_id == tx.pending_transaction_id,
                    TransactionDB.status == TransactionStatus.PENDING
                ).first()
                if not pending_row:
                    remaining.append(tx)
                    continue

                pending_row.plaid_tx_id = tx.plaid_tx_id
                pending_row.status = TransactionStatus.POSTED
                pending_row.amount = tx.amount
                pending_row.transaction_date = tx.transaction_date
                pending_row.raw_data = tx.raw_data
                pending_row.updated_at = datetime.utcnow()
                settled += 1

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Failed to settle pending transactions") from e

        if settled:
            logger.info(f"Settled {settled} pending transactions")
        return settled, remaining

    def apply_modifications(self, transactions: List[CanonicalTransaction]) -> Tuple[int, List[CanonicalTransaction]]:
        """
        Update amount, date, status and merchant of stored rows.

        Category and user edits are left alone. Returns the update count and
        the transactions with no stored row.
        """
        updated = 0
        missing = []
        try:
            for tx in transactions:
                row = self.db.query(TransactionDB).filter(TransactionDB.user_tx_id == tx.user_tx_id).first()
                if row is None and tx.plaid_tx_id:
                    row = self.db.query(TransactionDB).filter(TransactionDB.plaid_tx_id == tx.plaid_tx_id).first()
                if row is None:
                    missing.append(tx)
                    continue

                row.amount = tx.amount
                row.transaction_date = tx.transaction_date
                row.status = TransactionStatus(tx.status.value)
                row.merchant_name = tx.merchant_name
                row.raw_data = tx.raw_data
                row.updated_at = datetime.utcnow()
                updated += 1

            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Failed to apply transaction modifications") from e

        return updated, missing

    def apply_removals(self, plaid_tx_ids: List[str], superseded: Optional[Set[str]] = None) -> int:
        """Delete stored rows for aggregator ids, except those superseded in the same delta."""
        superseded = superseded or set()
        to_remove = [tx_id for tx_id in plaid_tx_ids if tx_id not in superseded]
        if not to_remove:
            return 0

        try:
            removed = self.db.query(TransactionDB).filter(
                TransactionDB.plaid_tx_id.in_(to_remove)
            ).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError("Failed to remove transactions") from e

        if removed:
            logger.info(f"Removed {removed} transactions")
        return removed


def _sorted_by_date(transactions: List[CanonicalTransaction]) -> List[CanonicalTransaction]:
    return sorted(transactions, key=lambda tx: (tx.transaction_date, tx.user_tx_id))
