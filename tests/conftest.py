import pytest
from decimal import Decimal
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from budget_sync.crud import crud_account, crud_budget, crud_category, crud_connection
from budget_sync.db.core import Base, UserDB, get_db, get_session_factory
from budget_sync.models.account import ManualAccountCreate
from budget_sync.models.aggregator import TokenExchange
from budget_sync.models.budget import BudgetCreate
from budget_sync.services.aggregator import get_aggregator

from tests.factories import FakeAggregator, make_aggregator_account


@pytest.fixture
def engine(tmp_path):
    # A file database so sync workers can open their own connections
    engine = create_engine(f"sqlite:///{tmp_path / 'budget_sync_test.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    crud_category.seed_built_in_categories(session)
    yield session
    session.close()


@pytest.fixture
def user(db):
    # First row gets id 1, matching the placeholder auth dependency
    db_user = UserDB(email="owner@example.com", display_name="Owner")
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


@pytest.fixture
def budget(db, user):
    return crud_budget.create_budget(db, user.id, BudgetCreate(name="Household"))


@pytest.fixture
def manual_account(db, user, budget):
    return crud_account.create_manual_account(
        db, user.id,
        ManualAccountCreate(
            institution_name="First Bank",
            institution_symbol="FBK",
            name="Checking",
            account_type="depository",
            mask="1234",
            balance_current=Decimal("250.00"),
        ),
        budget_id=budget.id,
    )


@pytest.fixture
def connection(db, user, budget):
    return crud_connection.create_connection(
        db, user.id,
        TokenExchange(access_token="access-sandbox", item_id="item-sandbox"),
        [make_aggregator_account()],
        budget_id=budget.id,
    )


@pytest.fixture
def fake_aggregator():
    return FakeAggregator()


@pytest.fixture
def client(db, session_factory, fake_aggregator):
    from budget_sync.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_aggregator] = lambda: fake_aggregator
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()
