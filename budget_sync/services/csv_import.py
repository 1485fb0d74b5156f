"""
CSV transaction import for a budget.

The file must carry every column in REQUIRED_COLUMNS. Rows that fail
validation, reference an unknown account or an unmapped category are
skipped one by one with a reason; the rest go through the same
normalizer and persister as aggregator sync, so ids already present from
any source are counted as duplicates instead of being overwritten.
"""
import csv
import io
import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

from pydantic import ValidationError
from sqlalchemy.orm import Session

from budget_sync.crud import crud_account, crud_category
from budget_sync.db.core import BudgetDB, NotFoundError
from budget_sync.models.account import AccountTypeEnum, FinAccountResponse, ManualAccountCreate
from budget_sync.models.sync import CsvImportResult, SkippedRecord
from budget_sync.models.transaction import CanonicalTransaction, TransactionStatusEnum
from budget_sync.services.category_mapper import CategoryMapper
from budget_sync.services.normalizer import CSV_DATE_FORMAT, NormalizationError, from_csv_row, parse_amount
from budget_sync.services.persistence import TransactionPersister, SYNC_BATCH_SIZE, SYNC_BATCH_DELAY_MS
from budget_sync.logging_config import get_logger

logger = get_logger(__name__)

REQUIRED_COLUMNS = [
    "TransactionId",
    "TransactionStatus",
    "TransactionDate",
    "TransactionAmount",
    "TransactionMerchant",
    "TransactionCategory",
    "BankName",
    "BankSymbol",
    "AccountName",
    "AccountType",
    "AccountMask",
]

SKIP_UNKNOWN_ACCOUNT = "unknown_account"
SKIP_UNMAPPED_CATEGORY = "unmapped_category"
SKIP_DUPLICATE_IN_FILE = "duplicate_in_file"

_BANK_SYMBOL = re.compile(r"^[A-Za-z]{3,5}$")
_ACCOUNT_MASK = re.compile(r"^\d{4}$")
_STATUSES = {s.value for s in TransactionStatusEnum}
_ACCOUNT_TYPES = {t.value for t in AccountTypeEnum}


class CsvImportError(Exception):
    """The file as a whole cannot be imported."""

    def __init__(self, message: str, missing_columns: Optional[List[str]] = None):
        super().__init__(message)
        self.missing_columns = missing_columns or []


# ===== PARSING =====

def read_rows(content: Union[bytes, str]) -> List[Tuple[int, Dict[str, str]]]:
    """
    Parse the file into ``(row_number, row)`` pairs, dropping blank rows.

    Row numbers are 1-based over data rows, so the header is not counted.
    Raises CsvImportError when the content is unreadable or required
    headers are missing.
    """
    if isinstance(content, bytes):
        try:
            content = content.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise CsvImportError("CSV file must be UTF-8 encoded") from e

    reader = csv.DictReader(io.StringIO(content))
    try:
        headers = [h.strip() for h in (reader.fieldnames or []) if h]
    except csv.Error as e:
        raise CsvImportError("CSV file could not be read") from e

    missing = [column for column in REQUIRED_COLUMNS if column not in headers]
    if missing:
        raise CsvImportError(f"CSV file is missing required columns: {', '.join(missing)}", missing)

    rows = []
    try:
        for number, raw in enumerate(reader, start=1):
            row = {
                (key or "").strip(): (value or "").strip() if isinstance(value, str) else ""
                for key, value in raw.items()
                if key is not None
            }
            if not any(row.values()):
                continue
            rows.append((number, row))
    except csv.Error as e:
        raise CsvImportError(f"CSV file could not be read: {e}") from e
    return rows


def validate_row(row: Dict[str, str]) -> Optional[str]:
    """Return the skip reason for an invalid row, or None when the row is usable"""
    if not row.get("TransactionId"):
        return "invalid_TransactionId"

    try:
        datetime.strptime(row.get("TransactionDate", ""), CSV_DATE_FORMAT)
    except ValueError:
        return "invalid_TransactionDate"

    try:
        parse_amount(row.get("TransactionAmount", ""))
    except NormalizationError:
        return "invalid_TransactionAmount"

    if row.get("TransactionStatus", "").lower() not in _STATUSES:
        return "invalid_TransactionStatus"
    if not _BANK_SYMBOL.match(row.get("BankSymbol", "")):
        return "invalid_BankSymbol"
    if not _ACCOUNT_MASK.match(row.get("AccountMask", "")):
        return "invalid_AccountMask"
    if not row.get("BankName"):
        return "invalid_BankName"
    if not row.get("AccountName"):
        return "invalid_AccountName"
    if row.get("AccountType", "").upper() not in _ACCOUNT_TYPES:
        return "invalid_AccountType"
    return None


# ===== IMPORT =====

def _account_key(row: Dict[str, str]) -> Tuple[str, str, str, str]:
    return row["BankName"], row["BankSymbol"], row["AccountName"], row["AccountMask"]


def _resolve_account(db: Session, user_id: int, budget_id: int, row: Dict[str, str],
                     create_missing_accounts: bool, created: List) -> Optional[int]:
    bank_name, bank_symbol, account_name, mask = _account_key(row)
    account = crud_account.find_manual_account(
        db, user_id,
        institution_name=bank_name,
        institution_symbol=bank_symbol,
        account_name=account_name,
        mask=mask,
    )
    if account:
        crud_account.link_account_to_budget(db, user_id, budget_id, account.id)
        return account.id

    if not create_missing_accounts:
        return None

    account = crud_account.create_manual_account(
        db, user_id,
        ManualAccountCreate(
            institution_name=bank_name,
            institution_symbol=bank_symbol,
            name=account_name,
            account_type=row["AccountType"],
            mask=mask,
        ),
        budget_id=budget_id,
    )
    created.append(account)
    logger.info(f"Created account '{account_name}' at {bank_name} during CSV import for budget {budget_id}")
    return account.id


def import_csv(db: Session, user_id: int, budget_id: int, content: Union[bytes, str],
               create_missing_accounts: bool = False, batch_size: int = SYNC_BATCH_SIZE,
               batch_delay: float = SYNC_BATCH_DELAY_MS / 1000.0) -> CsvImportResult:
    """
    Import a CSV file of transactions into a budget's accounts.

    Raises NotFoundError for an unknown budget and CsvImportError when the
    file itself is unusable; everything else is reported per row.
    """
    budget = db.query(BudgetDB).filter(BudgetDB.id == budget_id, BudgetDB.user_id == user_id).first()
    if not budget:
        raise NotFoundError(f"Budget with id {budget_id} not found")
    base_currency = budget.base_currency

    rows = read_rows(content)
    logger.info(f"CSV import for budget {budget_id}: {len(rows)} rows")

    result = CsvImportResult()
    mapper = CategoryMapper(crud_category.read_categories_for_budget(db, budget_id))
    accounts: Dict[Tuple[str, str, str, str], Optional[int]] = {}
    created = []
    seen_ids = set()
    transactions: List[CanonicalTransaction] = []

    for number, row in rows:
        reference = row.get("TransactionId") or None

        reason = validate_row(row)
        if reason:
            logger.warning(f"Skipping CSV row {number}: {reason}")
            result.skipped.append(SkippedRecord(reference=reference, reason=reason, index=number))
            continue

        if reference in seen_ids:
            result.skipped.append(SkippedRecord(reference=reference, reason=SKIP_DUPLICATE_IN_FILE, index=number))
            continue

        seen_ids.add(reference)
        row = {**row, "BankSymbol": row["BankSymbol"].upper()}

        key = _account_key(row)
        if key not in accounts:
            accounts[key] = _resolve_account(db, user_id, budget_id, row, create_missing_accounts, created)
        fin_account_id = accounts[key]
        if fin_account_id is None:
            result.skipped.append(SkippedRecord(reference=reference, reason=SKIP_UNKNOWN_ACCOUNT, index=number))
            continue

        category = mapper.resolve(row.get("TransactionCategory"))
        if category is None:
            logger.warning(f"Skipping CSV row {number}: category '{row.get('TransactionCategory')}' is not mapped")
            result.skipped.append(SkippedRecord(reference=reference, reason=SKIP_UNMAPPED_CATEGORY, index=number))
            continue

        try:
            transaction = from_csv_row(row, fin_account_id, base_currency, budget_id)
        except (NormalizationError, ValidationError, ValueError) as e:
            logger.warning(f"Skipping CSV row {number}: {e}")
            result.skipped.append(SkippedRecord(reference=reference, reason="invalid_transaction", index=number))
            continue

        transactions.append(transaction.model_copy(update={"category_id": category.category_id}))

    persisted = TransactionPersister(db, user_id, batch_size, batch_delay).persist(transactions)

    result.inserted_count = persisted.inserted_count
    result.duplicate_count = len(transactions) - persisted.inserted_count
    result.created_accounts = [FinAccountResponse.model_validate(a) for a in created]

    logger.info(
        f"CSV import for budget {budget_id} finished: {result.inserted_count} inserted, "
        f"{result.duplicate_count} duplicates, {len(result.skipped)} skipped"
    )
    return result
