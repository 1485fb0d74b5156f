import pytest
from datetime import date
from decimal import Decimal

from budget_sync.crud import crud_account, crud_budget, crud_category, crud_transaction
from budget_sync.db.core import AccountType, NotFoundError, OnboardingStep
from budget_sync.models.account import ManualAccountCreate
from budget_sync.models.budget import DebtGoalCreate, SavingsGoalCreate
from budget_sync.models.category import CategoryCreate, CompositeComponent
from budget_sync.models.transaction import ManualTransactionCreate

from tests.factories import on


# ===== ACCOUNTS =====

def test_manual_account_creates_institution_and_link(db, user, budget, manual_account):
    assert manual_account.account_type == AccountType.DEPOSITORY
    assert manual_account.manual_institution.symbol == "FBK"
    assert [a.id for a in crud_account.read_budget_accounts(db, budget.id)] == [manual_account.id]


def test_duplicate_manual_account_is_rejected(db, user, manual_account):
    with pytest.raises(ValueError):
        crud_account.create_manual_account(db, user.id, ManualAccountCreate(
            institution_name="First Bank", institution_symbol="FBK", name="Checking", mask="1234",
        ))


def test_unknown_account_type_becomes_other():
    assert crud_account.normalize_account_type("brokerage") == AccountType.OTHER
    assert crud_account.normalize_account_type("credit") == AccountType.CREDIT
    assert crud_account.normalize_account_type(None) == AccountType.OTHER


def test_linking_and_unlinking_are_idempotent(db, user, budget, manual_account):
    first = crud_account.link_account_to_budget(db, user.id, budget.id, manual_account.id)
    again = crud_account.link_account_to_budget(db, user.id, budget.id, manual_account.id)
    assert first.id == again.id

    assert crud_account.unlink_account_from_budget(db, user.id, budget.id, manual_account.id) is True
    assert crud_account.unlink_account_from_budget(db, user.id, budget.id, manual_account.id) is False
    assert crud_account.read_budget_accounts(db, budget.id) == []


def test_link_requires_known_budget_and_account(db, user, budget, manual_account):
    with pytest.raises(NotFoundError):
        crud_account.link_account_to_budget(db, user.id, 999, manual_account.id)
    with pytest.raises(NotFoundError):
        crud_account.link_account_to_budget(db, user.id, budget.id, 999)


def test_account_tracked_by_a_goal_cannot_be_unlinked(db, user, budget, manual_account):
    link = crud_account.link_account_to_budget(db, user.id, budget.id, manual_account.id)
    crud_budget.create_budget_goal(db, user.id, budget.id, SavingsGoalCreate(
        name="Rainy day", amount=Decimal("1000"), budget_fin_account_id=link.id, target_date=date(2027, 6, 1),
    ))

    with pytest.raises(ValueError):
        crud_account.unlink_account_from_budget(db, user.id, budget.id, manual_account.id)


# ===== GOALS =====

def test_goal_snapshots_account_balance(db, user, budget, manual_account):
    link = crud_account.link_account_to_budget(db, user.id, budget.id, manual_account.id)

    goal = crud_budget.create_budget_goal(db, user.id, budget.id, DebtGoalCreate(
        name="Card", amount=Decimal("900.555"), budget_fin_account_id=link.id, target_date=date(2027, 3, 1),
        subtype="credit_card", debt_interest_rate=Decimal("19.99"),
    ))

    assert goal.balance == Decimal("250.00")
    assert goal.amount == Decimal("900.56")
    assert goal.subtype == "credit_card"
    assert goal.spending_tracking == {}

    with pytest.raises(ValueError):
        crud_budget.create_budget_goal(db, user.id, budget.id, SavingsGoalCreate(
            name="Card", amount=Decimal("1"), budget_fin_account_id=link.id, target_date=date(2027, 3, 1),
        ))


def test_goal_needs_a_budget_account(db, user, budget):
    with pytest.raises(NotFoundError):
        crud_budget.create_budget_goal(db, user.id, budget.id, SavingsGoalCreate(
            name="Nowhere", amount=Decimal("1"), budget_fin_account_id=999, target_date=date(2027, 3, 1),
        ))


# ===== ONBOARDING =====

def test_onboarding_steps_follow_the_transition_table(db, user, budget):
    crud_budget.update_onboarding_step(db, budget.id, user.id, OnboardingStep.START, OnboardingStep.MANUAL)
    crud_budget.update_onboarding_step(db, budget.id, user.id, OnboardingStep.MANUAL, OnboardingStep.PROFILE_GOALS)
    updated = crud_budget.update_onboarding_step(
        db, budget.id, user.id, OnboardingStep.PROFILE_GOALS, OnboardingStep.ANALYZE_SPENDING
    )
    assert updated.onboarding_step == OnboardingStep.ANALYZE_SPENDING

    with pytest.raises(ValueError):
        crud_budget.update_onboarding_step(db, budget.id, user.id, OnboardingStep.ANALYZE_SPENDING, OnboardingStep.END)


def test_stale_expected_step_is_rejected(db, user, budget):
    with pytest.raises(ValueError):
        crud_budget.update_onboarding_step(db, budget.id, user.id, OnboardingStep.PLAID, OnboardingStep.PROFILE_GOALS)


def test_guarded_step_cannot_be_set_directly(db, user, budget):
    with pytest.raises(ValueError):
        crud_budget.update_onboarding_step(
            db, budget.id, user.id, OnboardingStep.ANALYZE_SPENDING, OnboardingStep.ANALYZE_SPENDING_IN_PROGRESS
        )


def test_transition_is_compare_and_swap(db, budget):
    assert crud_budget.transition_onboarding_step(db, budget.id, OnboardingStep.START, OnboardingStep.PLAID) is True
    assert crud_budget.transition_onboarding_step(db, budget.id, OnboardingStep.START, OnboardingStep.PLAID) is False


# ===== CATEGORIES & MANUAL TRANSACTIONS =====

def test_budget_category_and_composite(db, budget):
    coffee_beans = crud_category.create_budget_category(db, budget.id, CategoryCreate(
        name="Coffee Beans", group_name="Food & Drink",
    ))
    assert coffee_beans.budget_id == budget.id
    assert coffee_beans.group.budget_id is None

    household = crud_category.create_budget_category(db, budget.id, CategoryCreate(
        name="Household", group_name="Shared", is_composite=True,
        composite_data=[
            CompositeComponent(category_name="Groceries", weight=Decimal("70")),
            CompositeComponent(category_name="Coffee Beans", weight=Decimal("30")),
        ],
    ))
    assert household.group.budget_id == budget.id
    assert household.composite_data[0] == {"category_name": "Groceries", "weight": "70"}

    with pytest.raises(ValueError):
        crud_category.create_budget_category(db, budget.id, CategoryCreate(name="coffee beans", group_name="Food & Drink"))
    with pytest.raises(ValueError):
        crud_category.create_budget_category(db, budget.id, CategoryCreate(
            name="Mixed", group_name="Shared", is_composite=True,
            composite_data=[CompositeComponent(category_name="Nope", weight=Decimal("100"))],
        ))


def test_manual_transaction_rejects_duplicates_and_unknown_categories(db, user, budget, manual_account):
    entry = ManualTransactionCreate(
        fin_account_id=manual_account.id, transaction_date=on(3), amount=Decimal("4.50"), category="coffee",
        user_tx_id="cafe-1",
    )

    created = crud_transaction.create_manual_transaction(db, user.id, budget.id, entry)
    assert created.category.name == "Coffee"
    assert created.iso_currency_code == "USD"

    with pytest.raises(ValueError):
        crud_transaction.create_manual_transaction(db, user.id, budget.id, entry)
    with pytest.raises(ValueError):
        crud_transaction.create_manual_transaction(
            db, user.id, budget.id, entry.model_copy(update={"user_tx_id": "cafe-2", "category": "Espresso Bar"})
        )
    assert [t.user_tx_id for t in crud_transaction.read_budget_transactions(db, budget.id)] == ["cafe-1"]


def test_manual_transaction_needs_a_linked_account(db, user, budget, manual_account):
    crud_account.unlink_account_from_budget(db, user.id, budget.id, manual_account.id)

    with pytest.raises(NotFoundError):
        crud_transaction.create_manual_transaction(db, user.id, budget.id, ManualTransactionCreate(
            fin_account_id=manual_account.id, transaction_date=on(3), amount=Decimal("1"), category="Coffee",
        ))
