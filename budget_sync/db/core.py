import os
from typing import Optional, List, Dict, Any
from sqlalchemy import create_engine, ForeignKey, Index, UniqueConstraint, CheckConstraint, Boolean, String, Text, JSON, DECIMAL, DateTime, Date
from sqlalchemy.types import Enum
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Mapped, relationship, mapped_column
from datetime import datetime, date
from decimal import Decimal
import enum


DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///budget_sync.db")


class NotFoundError(Exception):
    pass


class Base(DeclarativeBase):
    pass


# ===== ENUMS =====

class AccountSource(enum.Enum):
    PLAID = "PLAID"
    MANUAL = "MANUAL"


class AccountType(enum.Enum):
    DEPOSITORY = "DEPOSITORY"
    CREDIT = "CREDIT"
    LOAN = "LOAN"
    INVESTMENT = "INVESTMENT"
    OTHER = "OTHER"


class TransactionStatus(enum.Enum):
    PENDING = "pending"
    POSTED = "posted"


class TransactionSource(enum.Enum):
    AGGREGATOR = "AGGREGATOR"
    MANUAL = "MANUAL"
    CSV = "CSV"


class OnboardingStep(enum.Enum):
    START = "start"
    PLAID = "plaid"
    MANUAL = "manual"
    PROFILE_GOALS = "profile_goals"
    ANALYZE_SPENDING = "analyze_spending"
    ANALYZE_SPENDING_IN_PROGRESS = "analyze_spending_in_progress"
    BUDGET_SETUP = "budget_setup"
    INVITE_MEMBERS = "invite_members"
    END = "end"


class GoalType(enum.Enum):
    SAVINGS = "savings"
    DEBT = "debt"
    INVESTMENT = "investment"
    CHARITY = "charity"


class DebtPaymentComponent(enum.Enum):
    PRINCIPAL = "principal"
    INTEREST = "interest"
    PRINCIPAL_INTEREST = "principal_interest"


# ===== USERS =====

class UserDB(Base):
    __tablename__ = "users"

    __table_args__ = (
        UniqueConstraint("email", name="uq_user_email"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(100))

    # Audit Trail
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    connections = relationship("PlaidConnectionItemDB", back_populates="user")
    institutions = relationship("ManualInstitutionDB", back_populates="user")
    fin_accounts = relationship("FinAccountDB", back_populates="user")
    budgets = relationship("BudgetDB", back_populates="user")


# ===== CONNECTIONS & ACCOUNTS =====

class PlaidConnectionItemDB(Base):
    """One linked bank login at the aggregator, holding the sync cursor."""
    __tablename__ = "plaid_connection_items"

    __table_args__ = (
        UniqueConstraint("plaid_item_id", name="uq_plaid_item_id"),
        Index("idx_connection_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)

    plaid_item_id: Mapped[str] = mapped_column(String(100), nullable=False)
    access_token: Mapped[str] = mapped_column(String(255), nullable=False)
    # Opaque token of the last page whose transactions were committed
    next_cursor: Mapped[str] = mapped_column(Text, nullable=False, default="")

    institution_id: Mapped[Optional[str]] = mapped_column(String(100))
    institution_name: Mapped[Optional[str]] = mapped_column(String(255))
    institution_logo: Mapped[Optional[str]] = mapped_column(Text)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Audit Trail
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("UserDB", back_populates="connections")
    fin_accounts = relationship("FinAccountDB", back_populates="connection", cascade="all, delete-orphan")


class ManualInstitutionDB(Base):
    __tablename__ = "manual_institutions"

    __table_args__ = (
        UniqueConstraint("user_id", "name", "symbol", name="uq_user_institution"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    symbol: Mapped[str] = mapped_column(String(20), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    user = relationship("UserDB", back_populates="institutions")
    fin_accounts = relationship("FinAccountDB", back_populates="manual_institution", cascade="all, delete-orphan")


class FinAccountDB(Base):
    """A bank account, either under an aggregator connection or entered manually."""
    __tablename__ = "fin_accounts"

    __table_args__ = (
        # Exactly one lineage is populated
        CheckConstraint(
            "(plaid_connection_item_id IS NOT NULL AND manual_institution_id IS NULL) OR "
            "(plaid_connection_item_id IS NULL AND manual_institution_id IS NOT NULL)",
            name="ck_fin_account_single_lineage",
        ),
        UniqueConstraint("plaid_account_id", name="uq_plaid_account_id"),
        Index("idx_fin_accounts_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    source: Mapped[AccountSource] = mapped_column(Enum(AccountSource), nullable=False)

    # Lineage
    plaid_connection_item_id: Mapped[Optional[int]] = mapped_column(ForeignKey("plaid_connection_items.id", ondelete="CASCADE"))
    manual_institution_id: Mapped[Optional[int]] = mapped_column(ForeignKey("manual_institutions.id", ondelete="CASCADE"))
    plaid_account_id: Mapped[Optional[str]] = mapped_column(String(100))

    # Account Details
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    official_name: Mapped[Optional[str]] = mapped_column(String(255))
    mask: Mapped[Optional[str]] = mapped_column(String(4))
    account_type: Mapped[AccountType] = mapped_column(Enum(AccountType), nullable=False, default=AccountType.OTHER)
    account_subtype: Mapped[Optional[str]] = mapped_column(String(50))

    # Balances
    balance_available: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(15, 2))
    balance_current: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(15, 2))
    iso_currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # Audit Trail
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("UserDB", back_populates="fin_accounts")
    connection = relationship("PlaidConnectionItemDB", back_populates="fin_accounts")
    manual_institution = relationship("ManualInstitutionDB", back_populates="fin_accounts")
    budget_links = relationship("BudgetFinAccountDB", back_populates="fin_account", cascade="all, delete-orphan")
    transactions = relationship("TransactionDB", back_populates="fin_account", cascade="all, delete-orphan")


# ===== BUDGETS =====

class BudgetDB(Base):
    __tablename__ = "budgets"

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_user_budget_name"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    onboarding_step: Mapped[OnboardingStep] = mapped_column(Enum(OnboardingStep), nullable=False, default=OnboardingStep.START)

    # Audit Trail
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("UserDB", back_populates="budgets")
    fin_account_links = relationship("BudgetFinAccountDB", back_populates="budget", cascade="all, delete-orphan")
    goals = relationship("BudgetGoalDB", back_populates="budget", cascade="all, delete-orphan")
    category_groups = relationship("CategoryGroupDB", back_populates="budget", cascade="all, delete-orphan")
    recommendation = relationship("BudgetRecommendationDB", back_populates="budget", uselist=False, cascade="all, delete-orphan")


class BudgetFinAccountDB(Base):
    __tablename__ = "budget_fin_accounts"

    __table_args__ = (
        UniqueConstraint("budget_id", "fin_account_id", name="uq_budget_fin_account"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False)
    fin_account_id: Mapped[int] = mapped_column(ForeignKey("fin_accounts.id", ondelete="CASCADE"), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    budget = relationship("BudgetDB", back_populates="fin_account_links")
    fin_account = relationship("FinAccountDB", back_populates="budget_links")
    goals = relationship("BudgetGoalDB", back_populates="budget_fin_account")


# ===== CATEGORIES =====

class CategoryGroupDB(Base):
    __tablename__ = "category_groups"

    __table_args__ = (
        UniqueConstraint("budget_id", "name", name="uq_budget_category_group"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    # NULL for built-in groups
    budget_id: Mapped[Optional[int]] = mapped_column(ForeignKey("budgets.id", ondelete="CASCADE"))
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    budget = relationship("BudgetDB", back_populates="category_groups")
    categories = relationship("CategoryDB", back_populates="group", cascade="all, delete-orphan")


class CategoryDB(Base):
    __tablename__ = "categories"

    __table_args__ = (
        UniqueConstraint("budget_id", "name", name="uq_budget_category_name"),
        Index("idx_category_group", "group_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    group_id: Mapped[int] = mapped_column(ForeignKey("category_groups.id", ondelete="CASCADE"), nullable=False)
    # NULL for built-in categories
    budget_id: Mapped[Optional[int]] = mapped_column(ForeignKey("budgets.id", ondelete="CASCADE"))

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))
    is_discretionary: Mapped[bool] = mapped_column(Boolean, default=False)
    is_composite: Mapped[bool] = mapped_column(Boolean, default=False)
    # [{"category_name": str, "weight": percent}, ...]
    composite_data: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON)

    group = relationship("CategoryGroupDB", back_populates="categories")
    transactions = relationship("TransactionDB", back_populates="category")


# ===== TRANSACTIONS =====

class TransactionDB(Base):
    __tablename__ = "fin_account_transactions"

    __table_args__ = (
        # Dedup key shared by every ingestion source
        UniqueConstraint("user_tx_id", name="uq_user_tx_id"),
        UniqueConstraint("plaid_tx_id", name="uq_plaid_tx_id"),
        Index("idx_transactions_account_date", "fin_account_id", "transaction_date"),
        Index("idx_transactions_user_date", "user_id", "transaction_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    fin_account_id: Mapped[int] = mapped_column(ForeignKey("fin_accounts.id", ondelete="CASCADE"), nullable=False)
    category_id: Mapped[int] = mapped_column(ForeignKey("categories.id"), nullable=False)

    # Identifiers
    user_tx_id: Mapped[str] = mapped_column(String(100), nullable=False)
    plaid_tx_id: Mapped[Optional[str]] = mapped_column(String(100))
    source: Mapped[TransactionSource] = mapped_column(Enum(TransactionSource), nullable=False)

    # Transaction Data
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(DECIMAL(12, 2), nullable=False)
    iso_currency_code: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    merchant_name: Mapped[Optional[str]] = mapped_column(String(255))
    payee: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[TransactionStatus] = mapped_column(Enum(TransactionStatus), nullable=False, default=TransactionStatus.POSTED)

    # Category provenance
    external_category: Mapped[Optional[str]] = mapped_column(String(255))
    category_confidence: Mapped[Optional[str]] = mapped_column(String(20))

    raw_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    meta_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    tags: Mapped[Optional[List[str]]] = mapped_column(JSON)

    # Audit Trail
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    fin_account = relationship("FinAccountDB", back_populates="transactions")
    category = relationship("CategoryDB", back_populates="transactions")


# ===== GOALS & RECOMMENDATIONS =====

class BudgetGoalDB(Base):
    __tablename__ = "budget_goals"

    __table_args__ = (
        UniqueConstraint("budget_id", "name", name="uq_budget_goal_name"),
        Index("idx_budget_goals_budget", "budget_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False)
    budget_fin_account_id: Mapped[int] = mapped_column(ForeignKey("budget_fin_accounts.id"), nullable=False)

    # Base goal
    type: Mapped[GoalType] = mapped_column(Enum(GoalType), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(DECIMAL(15, 2), nullable=False)
    balance: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(15, 2))  # account balance when the goal was set
    target_date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    # Variant fields
    subtype: Mapped[Optional[str]] = mapped_column(String(50))
    debt_interest_rate: Mapped[Optional[Decimal]] = mapped_column(DECIMAL(6, 3))
    debt_payment_component: Mapped[Optional[DebtPaymentComponent]] = mapped_column(Enum(DebtPaymentComponent))

    # {"YYYY-MM": {"month", "starting_balance", "allocations": {"YYYY-MM-DD": {...}}}}
    spending_tracking: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)

    # Audit Trail
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    budget = relationship("BudgetDB", back_populates="goals")
    budget_fin_account = relationship("BudgetFinAccountDB", back_populates="goals")


class BudgetRecommendationDB(Base):
    """Derived snapshot, rewritten wholesale by each analysis run."""
    __tablename__ = "budget_recommendations"

    __table_args__ = (
        UniqueConstraint("budget_id", name="uq_budget_recommendation"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    budget_id: Mapped[int] = mapped_column(ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False)

    spending_recommendations: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    goal_recommendations: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    spending_tracking: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    active_spending: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)

    generated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    budget = relationship("BudgetDB", back_populates="recommendation")


# ===== ENGINE & SESSION =====

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=os.getenv("SQL_ECHO", "false").lower() == "true", connect_args=_connect_args)
session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# Dependency to get the database session
def get_db():
    database = session_local()
    try:
        yield database
    finally:
        database.close()


# Sync workers open their own sessions through this factory
def get_session_factory():
    return session_local
