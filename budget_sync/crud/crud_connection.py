from sqlalchemy.orm import Session, selectinload
from sqlalchemy.exc import IntegrityError
from sqlalchemy import update
from typing import List, Optional
from datetime import datetime

from budget_sync.db.core import (
    PlaidConnectionItemDB, FinAccountDB, BudgetFinAccountDB, UserDB,
    AccountSource, AccountType, NotFoundError
)
from budget_sync.crud.crud_account import normalize_account_type
from budget_sync.models.aggregator import TokenExchange, AggregatorAccount, AggregatorInstitution
from budget_sync.logging_config import get_logger

logger = get_logger(__name__)


class CursorConflictError(Exception):
    """The stored cursor no longer matches the value the caller started from."""

    def __init__(self, connection_id: int, expected_cursor: str):
        super().__init__(f"Cursor for connection {connection_id} changed concurrently")
        self.connection_id = connection_id
        self.expected_cursor = expected_cursor


# ===== DATABASE OPERATIONS =====

def create_connection(
    db: Session,
    user_id: int,
    exchange: TokenExchange,
    accounts: List[AggregatorAccount],
    institution: Optional[AggregatorInstitution] = None,
    budget_id: Optional[int] = None,
) -> PlaidConnectionItemDB:
    """Store a newly linked item and its accounts, optionally linking them to a budget"""

    user = db.query(UserDB).filter(UserDB.id == user_id).first()
    if not user:
        raise NotFoundError(f"User with id {user_id} not found")

    existing = db.query(PlaidConnectionItemDB).filter(
        PlaidConnectionItemDB.plaid_item_id == exchange.item_id
    ).first()
    if existing:
        raise ValueError(f"Connection for item '{exchange.item_id}' already exists")

    db_connection = PlaidConnectionItemDB(
        user_id=user_id,
        plaid_item_id=exchange.item_id,
        access_token=exchange.access_token,
        next_cursor="",
        institution_id=institution.institution_id if institution else None,
        institution_name=institution.name if institution else None,
        institution_logo=institution.logo if institution else None,
    )

    try:
        db.add(db_connection)
        db.flush()

        for account in accounts:
            db_account = FinAccountDB(
                user_id=user_id,
                source=AccountSource.PLAID,
                plaid_connection_item_id=db_connection.id,
                plaid_account_id=account.account_id,
                name=account.name,
                official_name=account.official_name,
                mask=account.mask,
                account_type=normalize_account_type(account.type),
                account_subtype=account.subtype,
                balance_available=account.balance_available,
                balance_current=account.balance_current,
                iso_currency_code=(account.iso_currency_code or "USD").upper(),
            )
            db.add(db_account)
            db.flush()
            if budget_id is not None:
                db.add(BudgetFinAccountDB(budget_id=budget_id, fin_account_id=db_account.id))

        db.commit()
        db.refresh(db_connection)
        logger.info(f"Created connection {db_connection.id} with {len(accounts)} accounts for user {user_id}")
        return db_connection
    except IntegrityError:
        db.rollback()
        raise ValueError("Connection creation failed due to a database constraint.")


def read_connection(db: Session, connection_id: int, user_id: Optional[int] = None) -> Optional[PlaidConnectionItemDB]:
    query = db.query(PlaidConnectionItemDB).options(
        selectinload(PlaidConnectionItemDB.fin_accounts)
    ).filter(PlaidConnectionItemDB.id == connection_id)
    if user_id:
        query = query.filter(PlaidConnectionItemDB.user_id == user_id)
    return query.first()


def read_connections_for_budget(db: Session, budget_id: int) -> List[PlaidConnectionItemDB]:
    """Connections owning at least one account linked to the budget"""
    return db.query(PlaidConnectionItemDB).join(
        FinAccountDB, FinAccountDB.plaid_connection_item_id == PlaidConnectionItemDB.id
    ).join(
        BudgetFinAccountDB, BudgetFinAccountDB.fin_account_id == FinAccountDB.id
    ).filter(
        BudgetFinAccountDB.budget_id == budget_id
    ).distinct().order_by(PlaidConnectionItemDB.id).all()


def advance_cursor(db: Session, connection_id: int, expected_cursor: str, new_cursor: str) -> None:
    """
    Compare-and-swap the stored sync cursor.

    Only called once the page that produced ``new_cursor`` is committed.
    Raises ``CursorConflictError`` when another writer moved the cursor
    first, leaving the stored value untouched.
    """
    result = db.execute(
        update(PlaidConnectionItemDB)
        .where(
            PlaidConnectionItemDB.id == connection_id,
            PlaidConnectionItemDB.next_cursor == expected_cursor
        )
        .values(next_cursor=new_cursor, last_synced_at=datetime.utcnow(), updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise CursorConflictError(connection_id, expected_cursor)
    db.commit()
    logger.debug(f"Connection {connection_id} cursor advanced")


def delete_connection(db: Session, connection_id: int, user_id: int) -> None:
    """Delete a connection with its accounts and their transactions"""
    db_connection = db.query(PlaidConnectionItemDB).filter(
        PlaidConnectionItemDB.id == connection_id,
        PlaidConnectionItemDB.user_id == user_id
    ).first()
    if not db_connection:
        raise NotFoundError(f"Connection with id {connection_id} not found")

    db.delete(db_connection)
    db.commit()
    logger.info(f"Deleted connection {connection_id}")
