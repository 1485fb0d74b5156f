from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from budget_sync.db.core import BudgetDB
from budget_sync.models.aggregator import AggregatorAccount, AggregatorInstitution, SyncPage, TokenExchange
from budget_sync.services.aggregator import AggregatorClient, AggregatorError

CSV_HEADER = ("TransactionId,TransactionStatus,TransactionDate,TransactionAmount,TransactionMerchant,"
              "TransactionCategory,BankName,BankSymbol,AccountName,AccountType,AccountMask")


class FakeAggregator(AggregatorClient):
    """Serves scripted pages keyed by the cursor they are requested with."""

    def __init__(self, pages: Optional[Dict[str, SyncPage]] = None, fail_on_cursor: Optional[str] = None,
                 accounts: Optional[List[AggregatorAccount]] = None):
        self.pages = pages or {}
        self.fail_on_cursor = fail_on_cursor
        self.accounts = accounts if accounts is not None else [make_aggregator_account()]
        self.requested_cursors: List[str] = []

    def sync_transactions(self, access_token: str, cursor: str) -> SyncPage:
        self.requested_cursors.append(cursor)
        if cursor == self.fail_on_cursor:
            raise AggregatorError(f"Scripted failure at cursor {cursor!r}", retryable=True)
        if cursor not in self.pages:
            return SyncPage(next_cursor=cursor, has_more=False)
        return self.pages[cursor]

    def exchange_public_token(self, public_token: str) -> TokenExchange:
        return TokenExchange(access_token=f"access-{public_token}", item_id=f"item-{public_token}")

    def get_accounts(self, access_token: str) -> List[AggregatorAccount]:
        return self.accounts

    def get_item_institution_id(self, access_token: str) -> Optional[str]:
        return "ins_1"

    def get_institution(self, institution_id: str) -> Optional[AggregatorInstitution]:
        return AggregatorInstitution(institution_id=institution_id, name="First Platypus Bank")


def make_aggregator_account(account_id: str = "acc-1", name: str = "Plaid Checking",
                            type: str = "depository") -> AggregatorAccount:
    return AggregatorAccount(
        account_id=account_id,
        name=name,
        mask="0000",
        type=type,
        subtype="checking",
        balance_current=Decimal("1200.00"),
        iso_currency_code="USD",
    )


def make_plaid_tx(transaction_id: str, amount: float = 12.5, tx_date: str = "2026-10-01",
                  account_id: str = "acc-1", detailed: Optional[str] = "FOOD_AND_DRINK_GROCERIES",
                  pending: bool = False, pending_transaction_id: Optional[str] = None,
                  merchant_name: Optional[str] = "Corner Market") -> dict:
    return {
        "transaction_id": transaction_id,
        "account_id": account_id,
        "amount": amount,
        "date": tx_date,
        "iso_currency_code": "USD",
        "name": "CORNER MARKET #12",
        "merchant_name": merchant_name,
        "pending": pending,
        "pending_transaction_id": pending_transaction_id,
        "payment_meta": {"payee": None},
        "personal_finance_category": {"primary": "FOOD_AND_DRINK", "detailed": detailed, "confidence_level": "HIGH"}
        if detailed else None,
    }


def make_page(next_cursor: str, added: Optional[List[dict]] = None, modified: Optional[List[dict]] = None,
              removed: Optional[List[str]] = None, has_more: bool = False) -> SyncPage:
    return SyncPage(
        added=added or [],
        modified=modified or [],
        removed=removed or [],
        has_more=has_more,
        next_cursor=next_cursor,
    )


def make_csv_row(transaction_id: str, category: str = "Groceries", amount: str = "42.10",
                 tx_date: str = "10/02/2026", status: str = "posted", merchant: str = "Corner Market",
                 bank_name: str = "First Bank", bank_symbol: str = "FBK", account_name: str = "Checking",
                 account_type: str = "depository", mask: str = "1234") -> str:
    return ",".join([transaction_id, status, tx_date, amount, merchant, category,
                     bank_name, bank_symbol, account_name, account_type, mask])


def make_csv(*rows: str, header: str = CSV_HEADER) -> str:
    return "\n".join([header, *rows]) + "\n"


def on(day: int, month: int = 10, year: int = 2026) -> date:
    return date(year, month, day)


TODAY = date(2026, 10, 16)


def set_step(db, budget_id: int, step) -> None:
    """Force a budget's onboarding step, bypassing the transition table."""
    db.query(BudgetDB).filter(BudgetDB.id == budget_id).update({"onboarding_step": step})
    db.commit()
