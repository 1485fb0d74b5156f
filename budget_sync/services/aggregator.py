"""
Aggregator (Plaid) boundary.

The rest of the core only sees ``AggregatorClient``; ``PlaidAggregatorClient``
is the production implementation over plaid-python. Tests substitute a fake.
"""
import os
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from plaid.api import plaid_api
from plaid.configuration import Configuration
from plaid.api_client import ApiClient
from plaid.exceptions import ApiException
from plaid.model.transactions_sync_request import TransactionsSyncRequest
from plaid.model.item_public_token_exchange_request import ItemPublicTokenExchangeRequest
from plaid.model.accounts_get_request import AccountsGetRequest
from plaid.model.item_get_request import ItemGetRequest
from plaid.model.institutions_get_by_id_request import InstitutionsGetByIdRequest
from plaid.model.institutions_get_by_id_request_options import InstitutionsGetByIdRequestOptions
from plaid.model.country_code import CountryCode

from budget_sync.models.aggregator import SyncPage, TokenExchange, AggregatorAccount, AggregatorInstitution
from budget_sync.logging_config import get_logger

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)

PLAID_CLIENT_ID = os.getenv("PLAID_CLIENT_ID")
PLAID_SECRET = os.getenv("PLAID_SECRET")
PLAID_ENV = os.getenv("PLAID_ENV", "sandbox")
PLAID_FETCH_RETRIES = int(os.getenv("PLAID_FETCH_RETRIES", "3"))

PLAID_ENV_HOSTS = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


class AggregatorError(Exception):
    """Raised when a call to the aggregator fails"""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class AggregatorClient:
    """Operations the core needs from the aggregator."""

    def sync_transactions(self, access_token: str, cursor: str) -> SyncPage:
        raise NotImplementedError

    def exchange_public_token(self, public_token: str) -> TokenExchange:
        raise NotImplementedError

    def get_accounts(self, access_token: str) -> List[AggregatorAccount]:
        raise NotImplementedError

    def get_item_institution_id(self, access_token: str) -> Optional[str]:
        raise NotImplementedError

    def get_institution(self, institution_id: str) -> Optional[AggregatorInstitution]:
        raise NotImplementedError


def _enum_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(getattr(value, "value", value))


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return round(Decimal(str(value)), 2)


class PlaidAggregatorClient(AggregatorClient):

    def __init__(self, client: Optional[plaid_api.PlaidApi] = None, retries: int = PLAID_FETCH_RETRIES,
                 backoff_seconds: float = 1.0):
        self._client = client
        self.retries = max(1, retries)
        self.backoff_seconds = backoff_seconds

    @property
    def client(self) -> plaid_api.PlaidApi:
        """The SDK client, built on first use so budgets without connections never need credentials."""
        if self._client is None:
            self._client = create_plaid_api()
        return self._client

    def _call(self, operation: str, fn, request):
        """Run one SDK call, retrying transient failures with linear backoff."""
        for attempt in range(self.retries):
            try:
                return fn(request)
            except ApiException as e:
                transient = e.status in TRANSIENT_STATUS_CODES
                logger.warning(f"Plaid {operation} failed with status {e.status} (attempt {attempt + 1}/{self.retries})")
                if transient and attempt < self.retries - 1:
                    time.sleep(self.backoff_seconds * (attempt + 1))
                    continue
                raise AggregatorError(f"Plaid {operation} failed with status {e.status}", retryable=transient) from e
            except Exception as e:
                # Connection-level failures never reached the API
                logger.warning(f"Plaid {operation} failed: {e} (attempt {attempt + 1}/{self.retries})")
                if attempt < self.retries - 1:
                    time.sleep(self.backoff_seconds * (attempt + 1))
                    continue
                raise AggregatorError(f"Plaid {operation} failed: {e}", retryable=True) from e

    def sync_transactions(self, access_token: str, cursor: str) -> SyncPage:
        if cursor:
            request = TransactionsSyncRequest(access_token=access_token, cursor=cursor)
        else:
            request = TransactionsSyncRequest(access_token=access_token)
        response = self._call("transactions_sync", self.client.transactions_sync, request).to_dict()

        return SyncPage(
            added=[dict(tx) for tx in response.get("added", [])],
            modified=[dict(tx) for tx in response.get("modified", [])],
            removed=[tx["transaction_id"] for tx in response.get("removed", []) if tx.get("transaction_id")],
            has_more=bool(response.get("has_more")),
            next_cursor=response.get("next_cursor") or "",
        )

    def exchange_public_token(self, public_token: str) -> TokenExchange:
        request = ItemPublicTokenExchangeRequest(public_token=public_token)
        response = self._call("item_public_token_exchange", self.client.item_public_token_exchange, request)
        return TokenExchange(access_token=response.access_token, item_id=response.item_id)

    def get_accounts(self, access_token: str) -> List[AggregatorAccount]:
        response = self._call("accounts_get", self.client.accounts_get, AccountsGetRequest(access_token=access_token)).to_dict()
        accounts = []
        for account in response.get("accounts", []):
            balances: Dict[str, Any] = account.get("balances") or {}
            accounts.append(AggregatorAccount(
                account_id=account["account_id"],
                name=account.get("name") or "",
                official_name=account.get("official_name"),
                mask=account.get("mask"),
                type=_enum_value(account.get("type")),
                subtype=_enum_value(account.get("subtype")),
                balance_available=_decimal(balances.get("available")),
                balance_current=_decimal(balances.get("current")),
                iso_currency_code=balances.get("iso_currency_code"),
            ))
        return accounts

    def get_item_institution_id(self, access_token: str) -> Optional[str]:
        response = self._call("item_get", self.client.item_get, ItemGetRequest(access_token=access_token)).to_dict()
        return (response.get("item") or {}).get("institution_id")

    def get_institution(self, institution_id: str) -> Optional[AggregatorInstitution]:
        request = InstitutionsGetByIdRequest(
            institution_id=institution_id,
            country_codes=[CountryCode("US")],
            options=InstitutionsGetByIdRequestOptions(include_optional_metadata=True),
        )
        response = self._call("institutions_get_by_id", self.client.institutions_get_by_id, request).to_dict()
        institution = response.get("institution")
        if not institution:
            return None
        return AggregatorInstitution(
            institution_id=institution["institution_id"],
            name=institution.get("name") or "",
            logo=institution.get("logo"),
        )


def create_plaid_api() -> plaid_api.PlaidApi:
    if not PLAID_CLIENT_ID or not PLAID_SECRET:
        raise AggregatorError("Plaid credentials are not configured (PLAID_CLIENT_ID / PLAID_SECRET)")
    if PLAID_ENV not in PLAID_ENV_HOSTS:
        raise AggregatorError(f"Invalid PLAID_ENV: {PLAID_ENV}")

    configuration = Configuration(
        host=PLAID_ENV_HOSTS[PLAID_ENV],
        api_key={"clientId": PLAID_CLIENT_ID, "secret": PLAID_SECRET},
    )
    return plaid_api.PlaidApi(ApiClient(configuration))


# FastAPI dependency
def get_aggregator() -> AggregatorClient:
    return PlaidAggregatorClient()
