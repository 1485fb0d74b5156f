from sqlalchemy.orm import Session, joinedload
from typing import Optional, List
from datetime import date

from budget_sync.db.core import TransactionDB, BudgetDB, BudgetFinAccountDB, NotFoundError
from budget_sync.crud.crud_category import read_categories_for_budget
from budget_sync.models.transaction import ManualTransactionCreate
from budget_sync.services.category_mapper import CategoryMapper
from budget_sync.services.normalizer import from_manual
from budget_sync.services.persistence import TransactionPersister
from budget_sync.logging_config import get_logger

logger = get_logger(__name__)


# ===== DATABASE OPERATIONS =====

def read_budget_transactions(db: Session, budget_id: int, date_from: Optional[date] = None,
                             date_to: Optional[date] = None, skip: int = 0,
                             limit: Optional[int] = None) -> List[TransactionDB]:
    """Transactions of every account linked to the budget, oldest first"""
    query = db.query(TransactionDB).options(
        joinedload(TransactionDB.category)
    ).join(
        BudgetFinAccountDB, BudgetFinAccountDB.fin_account_id == TransactionDB.fin_account_id
    ).filter(BudgetFinAccountDB.budget_id == budget_id)

    if date_from:
        query = query.filter(TransactionDB.transaction_date >= date_from)
    if date_to:
        query = query.filter(TransactionDB.transaction_date <= date_to)

    query = query.order_by(TransactionDB.transaction_date.asc(), TransactionDB.id.asc()).offset(skip)
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def read_transaction_by_user_tx_id(db: Session, user_tx_id: str) -> Optional[TransactionDB]:
    return db.query(TransactionDB).options(
        joinedload(TransactionDB.category)
    ).filter(TransactionDB.user_tx_id == user_tx_id).first()


def create_manual_transaction(db: Session, user_id: int, budget_id: int,
                              entry: ManualTransactionCreate) -> TransactionDB:
    """
    Record one manually entered transaction against a budget account.

    Goes through the same normalizer, mapper and persister as every other
    source. An id that already exists is rejected rather than overwritten.
    """
    budget = db.query(BudgetDB).filter(BudgetDB.id == budget_id, BudgetDB.user_id == user_id).first()
    if not budget:
        raise NotFoundError(f"Budget with id {budget_id} not found")

    link = db.query(BudgetFinAccountDB).filter(
        BudgetFinAccountDB.budget_id == budget_id,
        BudgetFinAccountDB.fin_account_id == entry.fin_account_id
    ).first()
    if not link:
        raise NotFoundError(f"Account with id {entry.fin_account_id} is not linked to budget {budget_id}")

    transaction = from_manual(entry, budget.base_currency)

    mapper = CategoryMapper(read_categories_for_budget(db, budget_id))
    category = mapper.resolve(transaction.category_label)
    if category is None:
        raise ValueError(f"Category '{entry.category}' does not match any category")

    transaction = transaction.model_copy(update={
        "category_id": category.category_id,
        "meta_data": {"created_for": budget_id},
    })

    result = TransactionPersister(db, user_id, batch_delay=0).persist([transaction])
    if result.inserted_count == 0:
        raise ValueError(f"Transaction '{transaction.user_tx_id}' already exists")

    logger.info(f"Created manual transaction {transaction.user_tx_id} for budget {budget_id}")
    return read_transaction_by_user_tx_id(db, transaction.user_tx_id)
