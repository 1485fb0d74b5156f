from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from typing import Optional, List

from budget_sync.db.core import (
    FinAccountDB, ManualInstitutionDB, BudgetFinAccountDB, BudgetDB, UserDB,
    AccountSource, AccountType, NotFoundError
)
from budget_sync.models.account import ManualAccountCreate
from budget_sync.logging_config import get_logger

logger = get_logger(__name__)


def normalize_account_type(value: Optional[str]) -> AccountType:
    """Map any provider or user supplied type onto the closed set; unknown values become OTHER."""
    if not value:
        return AccountType.OTHER
    try:
        return AccountType(str(getattr(value, "value", value)).strip().upper())
    except ValueError:
        return AccountType.OTHER


# ===== DATABASE OPERATIONS =====

def create_manual_account(db: Session, user_id: int, account_data: ManualAccountCreate,
                          budget_id: Optional[int] = None) -> FinAccountDB:
    """
    Create a manual account, its institution when new, and the budget link.

    All three rows commit together or not at all.
    """
    user = db.query(UserDB).filter(UserDB.id == user_id).first()
    if not user:
        raise NotFoundError(f"User with id {user_id} not found")

    if budget_id is not None:
        budget = db.query(BudgetDB).filter(BudgetDB.id == budget_id, BudgetDB.user_id == user_id).first()
        if not budget:
            raise NotFoundError(f"Budget with id {budget_id} not found")

    existing = find_manual_account(
        db, user_id,
        institution_name=account_data.institution_name,
        institution_symbol=account_data.institution_symbol,
        account_name=account_data.name,
        mask=account_data.mask,
    )
    if existing:
        raise ValueError(f"Account '{account_data.name}' already exists at {account_data.institution_name}")

    try:
        institution = db.query(ManualInstitutionDB).filter(
            ManualInstitutionDB.user_id == user_id,
            ManualInstitutionDB.name == account_data.institution_name,
            ManualInstitutionDB.symbol == account_data.institution_symbol
        ).first()
        if not institution:
            institution = ManualInstitutionDB(
                user_id=user_id,
                name=account_data.institution_name,
                symbol=account_data.institution_symbol,
            )
            db.add(institution)
            db.flush()

        db_account = FinAccountDB(
            user_id=user_id,
            source=AccountSource.MANUAL,
            manual_institution_id=institution.id,
            name=account_data.name,
            mask=account_data.mask,
            account_type=normalize_account_type(account_data.account_type),
            balance_current=account_data.balance_current,
            iso_currency_code=(account_data.iso_currency_code or "USD").upper(),
        )
        db.add(db_account)
        db.flush()

        if budget_id is not None:
            db.add(BudgetFinAccountDB(budget_id=budget_id, fin_account_id=db_account.id))

        db.commit()
        db.refresh(db_account)
        logger.info(f"Created manual account {db_account.id} for user {user_id}")
        return db_account
    except IntegrityError:
        db.rollback()
        raise ValueError("Account creation failed due to database constraint")


def find_manual_account(db: Session, user_id: int, institution_name: str, institution_symbol: str,
                        account_name: str, mask: Optional[str] = None) -> Optional[FinAccountDB]:
    """Match a manual account on account name, institution name and symbol, and mask when given"""
    query = db.query(FinAccountDB).join(
        ManualInstitutionDB, FinAccountDB.manual_institution_id == ManualInstitutionDB.id
    ).filter(
        FinAccountDB.user_id == user_id,
        FinAccountDB.source == AccountSource.MANUAL,
        FinAccountDB.name == account_name,
        ManualInstitutionDB.name == institution_name,
        ManualInstitutionDB.symbol == institution_symbol
    )
    if mask:
        query = query.filter(FinAccountDB.mask == mask)
    return query.first()


def read_fin_account(db: Session, account_id: int, user_id: Optional[int] = None) -> Optional[FinAccountDB]:
    query = db.query(FinAccountDB).filter(FinAccountDB.id == account_id)
    if user_id:
        query = query.filter(FinAccountDB.user_id == user_id)
    return query.first()


def read_budget_accounts(db: Session, budget_id: int) -> List[FinAccountDB]:
    """Accounts linked to a budget"""
    return db.query(FinAccountDB).join(
        BudgetFinAccountDB, BudgetFinAccountDB.fin_account_id == FinAccountDB.id
    ).filter(BudgetFinAccountDB.budget_id == budget_id).order_by(FinAccountDB.id).all()


def link_account_to_budget(db: Session, user_id: int, budget_id: int, account_id: int) -> BudgetFinAccountDB:
    """Link an account to a budget. Linking an already linked account returns the existing link."""
    budget = db.query(BudgetDB).filter(BudgetDB.id == budget_id, BudgetDB.user_id == user_id).first()
    if not budget:
        raise NotFoundError(f"Budget with id {budget_id} not found")
    account = read_fin_account(db, account_id, user_id)
    if not account:
        raise NotFoundError(f"Account with id {account_id} not found")

    link = db.query(BudgetFinAccountDB).filter(
        BudgetFinAccountDB.budget_id == budget_id,
        BudgetFinAccountDB.fin_account_id == account_id
    ).first()
    if link:
        return link

    link = BudgetFinAccountDB(budget_id=budget_id, fin_account_id=account_id)
    try:
        db.add(link)
        db.commit()
        db.refresh(link)
        return link
    except IntegrityError:
        # A concurrent request linked it first
        db.rollback()
        return db.query(BudgetFinAccountDB).filter(
            BudgetFinAccountDB.budget_id == budget_id,
            BudgetFinAccountDB.fin_account_id == account_id
        ).one()


def unlink_account_from_budget(db: Session, user_id: int, budget_id: int, account_id: int) -> bool:
    """Remove a budget link. Returns False when there was nothing to remove."""
    budget = db.query(BudgetDB).filter(BudgetDB.id == budget_id, BudgetDB.user_id == user_id).first()
    if not budget:
        raise NotFoundError(f"Budget with id {budget_id} not found")

    link = db.query(BudgetFinAccountDB).filter(
        BudgetFinAccountDB.budget_id == budget_id,
        BudgetFinAccountDB.fin_account_id == account_id
    ).first()
    if not link:
        return False

    if link.goals:
        raise ValueError("Cannot unlink an account that budget goals are tracking")

    db.delete(link)
    db.commit()
    return True
