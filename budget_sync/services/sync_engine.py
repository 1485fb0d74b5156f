"""
Cursor based incremental sync against the aggregator.

Pages are processed strictly in order. A page's cursor is written to the
connection only after everything in that page has been committed, so a
failure at any point leaves the stored cursor on the last fully persisted
page and a re-run replays from there against the dedup key.
"""
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from budget_sync.crud import crud_category, crud_connection
from budget_sync.crud.crud_connection import CursorConflictError
from budget_sync.db.core import PlaidConnectionItemDB
from budget_sync.models.aggregator import SyncPage
from budget_sync.models.sync import MultiSyncResult, SkippedRecord, SyncResult
from budget_sync.models.transaction import CanonicalTransaction
from budget_sync.services.aggregator import AggregatorClient, AggregatorError
from budget_sync.services.category_mapper import CategoryMapper, to_internal_label
from budget_sync.services.normalizer import NormalizationError, from_aggregator
from budget_sync.services.persistence import (
    PersistenceError, TransactionPersister, SYNC_BATCH_SIZE, SYNC_BATCH_DELAY_MS
)
from budget_sync.logging_config import get_logger

logger = get_logger(__name__)

SYNC_MAX_WORKERS = int(os.getenv("SYNC_MAX_WORKERS", "4"))

SKIP_UNKNOWN_ACCOUNT = "unknown_account"
SKIP_UNMAPPED_CATEGORY = "unmapped_category"
SKIP_INVALID = "invalid_transaction"


class SyncError(Exception):
    """A page could not be fetched or persisted."""

    def __init__(self, message: str, connection_id: int, page: Optional[int] = None):
        super().__init__(message)
        self.connection_id = connection_id
        self.page = page


def aggregator_label(tx: CanonicalTransaction) -> Optional[str]:
    """Internal category name for an aggregator label, or the label itself when it is not a provider code."""
    return to_internal_label(tx.category_label) or tx.category_label


class SyncEngine:

    def __init__(self, db: Session, aggregator: AggregatorClient, mapper: Optional[CategoryMapper] = None,
                 batch_size: int = SYNC_BATCH_SIZE, batch_delay: float = SYNC_BATCH_DELAY_MS / 1000.0):
        self.db = db
        self.aggregator = aggregator
        self.mapper = mapper or CategoryMapper(crud_category.read_categories_for_budget(db))
        self.batch_size = batch_size
        self.batch_delay = batch_delay

    def sync_connection(self, connection: PlaidConnectionItemDB) -> SyncResult:
        """
        Pull every page available for ``connection`` from its stored cursor.

        Never raises for fetch or persist failures; they are reported on the
        result with the connection and page that failed.
        """
        connection_id = connection.id
        access_token = connection.access_token
        cursor = connection.next_cursor or ""
        accounts = {a.plaid_account_id: a.id for a in connection.fin_accounts if a.plaid_account_id}
        persister = TransactionPersister(self.db, connection.user_id, self.batch_size, self.batch_delay)

        result = SyncResult(connection_id=connection_id, updated_cursor=cursor)
        logger.info(f"Starting sync for connection {connection_id} ({'initial' if not cursor else 'incremental'})")

        page_number = 0
        try:
            while True:
                page_number += 1
                page = self._fetch_page(connection_id, access_token, cursor, page_number)
                self._process_page(connection_id, page, page_number, accounts, persister, result)

                try:
                    crud_connection.advance_cursor(self.db, connection_id, cursor, page.next_cursor)
                except CursorConflictError as e:
                    raise SyncError(f"Cursor conflict on connection {connection_id} at page {page_number}",
                                    connection_id, page_number) from e

                cursor = page.next_cursor
                result.updated_cursor = cursor
                result.pages = page_number
                if not page.has_more:
                    break
        except SyncError as e:
            logger.error(f"{e} (cause: {e.__cause__})")
            result.error = str(e)
            return result

        logger.info(
            f"Sync finished for connection {connection_id}: {result.pages} pages, "
            f"{result.new_transaction_count} new, {result.updated_count} updated, "
            f"{result.removed_count} removed, {len(result.skipped)} skipped"
        )
        return result

    def _fetch_page(self, connection_id: int, access_token: str, cursor: str, page_number: int) -> SyncPage:
        try:
            page = self.aggregator.sync_transactions(access_token, cursor)
        except AggregatorError as e:
            raise SyncError(f"Failed to fetch page {page_number} for connection {connection_id}",
                            connection_id, page_number) from e
        logger.debug(f"Connection {connection_id} page {page_number}: {len(page.added)} added, "
                     f"{len(page.modified)} modified, {len(page.removed)} removed, has_more={page.has_more}")
        return page

    def _process_page(self, connection_id: int, page: SyncPage, page_number: int, accounts: Dict[str, int],
                      persister: TransactionPersister, result: SyncResult) -> None:
        added = self._normalize(page.added, accounts, result.skipped)
        modified = self._normalize(page.modified, accounts, result.skipped)

        # One mapper call per page
        mapped = self.mapper.map_labels(aggregator_label(tx) for tx in added + modified)
        added = self._assign_categories(added, mapped, result.skipped)
        # Updates to stored rows never touch the category, so only unknown rows need a mapped label
        modified = [self._with_category(tx, mapped) for tx in modified]

        superseded = {tx.pending_transaction_id for tx in added if tx.pending_transaction_id}
        superseded.update(tx.plaid_tx_id for tx in added + modified if tx.plaid_tx_id)

        try:
            settled, to_insert = persister.update_pending_to_posted(added)
            updated, missing = persister.apply_modifications(modified)
            missing = self._drop_unmapped(missing, result.skipped)
            persisted = persister.persist(to_insert + missing)
            removed = persister.apply_removals(page.removed, superseded)
        except PersistenceError as e:
            raise SyncError(f"Failed to persist page {page_number} for connection {connection_id}",
                            connection_id, page_number) from e

        result.new_transaction_count += persisted.inserted_count
        result.updated_count += settled + updated
        result.removed_count += removed

    def _normalize(self, raw_transactions: List[dict], accounts: Dict[str, int],
                   skipped: List[SkippedRecord]) -> List[CanonicalTransaction]:
        normalized = []
        for index, raw in enumerate(raw_transactions):
            reference = raw.get("transaction_id")
            fin_account_id = accounts.get(raw.get("account_id"))
            if fin_account_id is None:
                skipped.append(SkippedRecord(reference=reference, reason=SKIP_UNKNOWN_ACCOUNT, index=index))
                continue
            try:
                normalized.append(from_aggregator(raw, fin_account_id))
            except (NormalizationError, ValueError) as e:
                logger.warning(f"Skipping aggregator transaction {reference}: {e}")
                skipped.append(SkippedRecord(reference=reference, reason=SKIP_INVALID, index=index))
        return normalized

    def _with_category(self, tx: CanonicalTransaction, mapped: dict) -> CanonicalTransaction:
        match = mapped.get(aggregator_label(tx)) if aggregator_label(tx) else None
        if match is None:
            return tx
        return tx.model_copy(update={"category_id": match.category_id})

    def _drop_unmapped(self, transactions: List[CanonicalTransaction],
                       skipped: List[SkippedRecord]) -> List[CanonicalTransaction]:
        resolved = []
        for tx in transactions:
            if tx.category_id is None:
                skipped.append(SkippedRecord(reference=tx.user_tx_id, reason=SKIP_UNMAPPED_CATEGORY))
                continue
            resolved.append(tx)
        return resolved

    def _assign_categories(self, transactions: List[CanonicalTransaction], mapped: dict,
                           skipped: List[SkippedRecord]) -> List[CanonicalTransaction]:
        return self._drop_unmapped([self._with_category(tx, mapped) for tx in transactions], skipped)


# ===== FAN-OUT =====

def sync_connections(
    connection_ids: Iterable[int],
    session_factory: Callable[[], Session],
    aggregator: AggregatorClient,
    max_workers: int = SYNC_MAX_WORKERS,
    mapper: Optional[CategoryMapper] = None,
    batch_size: int = SYNC_BATCH_SIZE,
    batch_delay: float = SYNC_BATCH_DELAY_MS / 1000.0,
) -> MultiSyncResult:
    """
    Sync several connections independently, each with its own session.

    One connection failing never stops the others; results come back in the
    order the ids were given.
    """
    connection_ids = list(connection_ids)

    def _run(connection_id: int) -> SyncResult:
        db = session_factory()
        try:
            connection = crud_connection.read_connection(db, connection_id)
            if connection is None:
                return SyncResult(connection_id=connection_id, updated_cursor="",
                                  error=f"Connection {connection_id} not found")
            engine = SyncEngine(db, aggregator, mapper=mapper, batch_size=batch_size, batch_delay=batch_delay)
            return engine.sync_connection(connection)
        except Exception as e:
            logger.exception(f"Unexpected failure syncing connection {connection_id}: {e}")
            return SyncResult(connection_id=connection_id, updated_cursor="",
                              error=f"Sync failed for connection {connection_id}")
        finally:
            db.close()

    if max_workers <= 1 or len(connection_ids) <= 1:
        results = [_run(connection_id) for connection_id in connection_ids]
    else:
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            results = list(executor.map(_run, connection_ids))

    multi = MultiSyncResult(results=results)
    if multi.failed:
        logger.warning(f"Sync failed for connections {multi.failed}")
    return multi
