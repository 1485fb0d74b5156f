"""
Converts raw records from each ingestion source into CanonicalTransaction.

Pure functions: nothing here reads or writes the store, and category labels
are carried through unresolved for the mapper pass.
"""
import random
import string
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

from budget_sync.models.transaction import (
    CanonicalTransaction,
    ManualTransactionCreate,
    TransactionSourceEnum,
    TransactionStatusEnum,
)

DEFAULT_CURRENCY = "USD"
CSV_DATE_FORMAT = "%m/%d/%Y"


class NormalizationError(ValueError):
    """A raw record is missing something the canonical shape cannot do without."""
    pass


# ===== HELPERS =====

def parse_amount(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return round(value, 2)
    try:
        # str() first so floats from JSON payloads do not carry binary noise
        return round(Decimal(str(value).replace(",", "").replace("$", "").strip()), 2)
    except (InvalidOperation, ValueError) as e:
        raise NormalizationError(f"Invalid amount: {value!r}") from e


def parse_date(value: Any, fmt: Optional[str] = None) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        if fmt:
            return datetime.strptime(str(value).strip(), fmt).date()
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError as e:
        raise NormalizationError(f"Invalid date: {value!r}") from e


def generate_manual_tx_id(transaction_date: date) -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"M{transaction_date.strftime('%Y%m%d')}{suffix}"


# ===== SOURCES =====

def from_aggregator(raw: Mapping[str, Any], fin_account_id: int) -> CanonicalTransaction:
    """Normalize one aggregator transaction payload (added or modified)."""
    transaction_id = raw.get("transaction_id")
    if not transaction_id:
        raise NormalizationError("Aggregator transaction without transaction_id")

    category = raw.get("personal_finance_category") or {}
    payment_meta = raw.get("payment_meta") or {}
    currency = raw.get("iso_currency_code") or raw.get("unofficial_currency_code") or DEFAULT_CURRENCY

    return CanonicalTransaction(
        user_tx_id=transaction_id,
        plaid_tx_id=transaction_id,
        fin_account_id=fin_account_id,
        source=TransactionSourceEnum.AGGREGATOR,
        transaction_date=parse_date(raw.get("date")),
        amount=parse_amount(raw.get("amount")),
        iso_currency_code=currency,
        merchant_name=raw.get("merchant_name") or raw.get("name"),
        payee=payment_meta.get("payee"),
        status=TransactionStatusEnum.PENDING if raw.get("pending") else TransactionStatusEnum.POSTED,
        category_label=category.get("detailed"),
        category_id=None,
        category_confidence=category.get("confidence_level"),
        pending_transaction_id=raw.get("pending_transaction_id"),
        raw_data=_json_safe(raw),
        meta_data=None,
        tags=None,
    )


def from_manual(entry: ManualTransactionCreate, base_currency: str) -> CanonicalTransaction:
    return CanonicalTransaction(
        user_tx_id=entry.user_tx_id or generate_manual_tx_id(entry.transaction_date),
        plaid_tx_id=None,
        fin_account_id=entry.fin_account_id,
        source=TransactionSourceEnum.MANUAL,
        transaction_date=entry.transaction_date,
        amount=entry.amount,
        iso_currency_code=entry.iso_currency_code or base_currency or DEFAULT_CURRENCY,
        merchant_name=entry.merchant_name,
        payee=entry.payee,
        status=entry.status or TransactionStatusEnum.POSTED,
        category_label=entry.category,
        category_id=None,
        category_confidence=None,
        pending_transaction_id=None,
        raw_data=None,
        meta_data=None,
        tags=entry.tags,
    )


def from_csv_row(row: Mapping[str, str], fin_account_id: int, base_currency: str, budget_id: Optional[int] = None) -> CanonicalTransaction:
    """Normalize a validated CSV row (see csv_import.REQUIRED_COLUMNS)."""
    status = (row.get("TransactionStatus") or "").strip().lower() or TransactionStatusEnum.POSTED.value
    return CanonicalTransaction(
        user_tx_id=row["TransactionId"].strip(),
        plaid_tx_id=None,
        fin_account_id=fin_account_id,
        source=TransactionSourceEnum.CSV,
        transaction_date=parse_date(row["TransactionDate"], CSV_DATE_FORMAT),
        amount=parse_amount(row["TransactionAmount"]),
        iso_currency_code=base_currency or DEFAULT_CURRENCY,
        merchant_name=row.get("TransactionMerchant"),
        payee=None,
        status=TransactionStatusEnum(status),
        category_label=row.get("TransactionCategory"),
        category_id=None,
        category_confidence=None,
        pending_transaction_id=None,
        raw_data=None,
        meta_data={"created_for": budget_id} if budget_id is not None else None,
        tags=None,
    )


def _json_safe(value: Any) -> Any:
    """Dates and decimals inside SDK payloads become strings for the JSON column."""
    if isinstance(value, Mapping):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "value") and not isinstance(value, (str, int, float, bool)):
        return str(value.value)
    return value
