import pytest
from datetime import date
from decimal import Decimal

from budget_sync.crud import crud_account, crud_budget, crud_transaction
from budget_sync.db.core import BudgetDB, OnboardingStep
from budget_sync.models.budget import SavingsGoalCreate
from budget_sync.models.transaction import ManualTransactionCreate
from budget_sync.services.orchestration import (
    AnalysisError,
    AnalysisInProgressError,
    BudgetAnalysisOrchestrator,
    InvalidOnboardingStepError,
)

from tests.factories import TODAY, FakeAggregator, make_page, make_plaid_tx, on, set_step


def current_step(db, budget_id):
    db.expire_all()
    return db.query(BudgetDB).filter(BudgetDB.id == budget_id).one().onboarding_step


def orchestrator(db, session_factory, aggregator):
    return BudgetAnalysisOrchestrator(db, aggregator, session_factory, today=TODAY, max_workers=1, sync_batch_delay=0)


@pytest.fixture
def spending_aggregator():
    return FakeAggregator({"": make_page("c1", added=[
        make_plaid_tx("g1", amount=80, tx_date="2026-10-02"),
        make_plaid_tx("s1", amount=250, tx_date="2026-10-04", detailed="GENERAL_MERCHANDISE_DEPARTMENT_STORES"),
        make_plaid_tx("p1", amount=-2400, tx_date="2026-10-01", detailed="INCOME_WAGES"),
    ])})


def test_successful_run_moves_budget_to_setup(db, session_factory, budget, connection, spending_aggregator):
    set_step(db, budget.id, OnboardingStep.ANALYZE_SPENDING)

    outcome = orchestrator(db, session_factory, spending_aggregator).run(budget.id)

    assert outcome.sync.succeeded == [connection.id]
    assert outcome.sync.new_transaction_count == 3
    assert outcome.recommendation.totals.income == Decimal("2400.00")
    assert outcome.recommendation.balanced.spending["Shopping"] == Decimal("250.00")
    assert current_step(db, budget.id) == OnboardingStep.BUDGET_SETUP

    stored = crud_budget.read_recommendation(db, budget.id)
    assert stored.active_spending["posture"] == "balanced"
    assert set(stored.spending_recommendations) == {"balanced", "conservative", "relaxed"}
    assert "2026-10" in stored.spending_tracking


def test_run_rewrites_goal_tracking(db, user, session_factory, budget, connection, spending_aggregator):
    link = crud_account.link_account_to_budget(db, user.id, budget.id, connection.fin_accounts[0].id)
    goal = crud_budget.create_budget_goal(db, user.id, budget.id, SavingsGoalCreate(
        name="Vacation", amount=Decimal("600"), budget_fin_account_id=link.id, target_date=date(2027, 4, 10),
    ))
    set_step(db, budget.id, OnboardingStep.ANALYZE_SPENDING)

    outcome = orchestrator(db, session_factory, spending_aggregator).run(budget.id)

    tracking = outcome.recommendation.balanced.goal_trackings[str(goal.id)]
    assert tracking.on_track is True
    db.refresh(goal)
    assert sorted(goal.spending_tracking) == sorted(tracking.tracking)
    assert goal.spending_tracking["2026-11"]["allocations"]["2026-11-25"]["amount_target"] == "120.00"


def test_manual_only_budget_can_be_analyzed(db, user, session_factory, budget, manual_account):
    for day, category, amount in ((3, "Groceries", "60"), (9, "Coffee", "12.40")):
        crud_transaction.create_manual_transaction(db, user.id, budget.id, ManualTransactionCreate(
            fin_account_id=manual_account.id, transaction_date=on(day), amount=Decimal(amount), category=category,
        ))
    set_step(db, budget.id, OnboardingStep.ANALYZE_SPENDING)
    aggregator = FakeAggregator()

    outcome = orchestrator(db, session_factory, aggregator).run(budget.id)

    assert outcome.sync.results == []
    assert aggregator.requested_cursors == []
    assert outcome.recommendation.balanced.spending == {"Coffee": Decimal("12.40"), "Groceries": Decimal("60.00")}


def test_second_run_is_turned_away_while_one_is_in_progress(db, session_factory, budget, connection,
                                                            spending_aggregator):
    set_step(db, budget.id, OnboardingStep.ANALYZE_SPENDING_IN_PROGRESS)

    with pytest.raises(AnalysisInProgressError):
        orchestrator(db, session_factory, spending_aggregator).run(budget.id)

    assert current_step(db, budget.id) == OnboardingStep.ANALYZE_SPENDING_IN_PROGRESS
    assert spending_aggregator.requested_cursors == []
    assert crud_budget.read_recommendation(db, budget.id) is None


def test_failed_sync_releases_the_guard(db, session_factory, budget, connection):
    set_step(db, budget.id, OnboardingStep.ANALYZE_SPENDING)
    aggregator = FakeAggregator(fail_on_cursor="")

    with pytest.raises(AnalysisError):
        orchestrator(db, session_factory, aggregator).run(budget.id)

    assert current_step(db, budget.id) == OnboardingStep.ANALYZE_SPENDING
    assert crud_budget.read_recommendation(db, budget.id) is None

    # The released guard can be claimed again
    aggregator.fail_on_cursor = None
    aggregator.pages = {"": make_page("c1", added=[make_plaid_tx("g1")])}
    orchestrator(db, session_factory, aggregator).run(budget.id)
    assert current_step(db, budget.id) == OnboardingStep.BUDGET_SETUP


def test_nothing_to_analyze_releases_the_guard(db, session_factory, budget, connection):
    set_step(db, budget.id, OnboardingStep.ANALYZE_SPENDING)

    with pytest.raises(AnalysisError):
        orchestrator(db, session_factory, FakeAggregator()).run(budget.id)

    assert current_step(db, budget.id) == OnboardingStep.ANALYZE_SPENDING


def test_wrong_step_is_rejected(db, session_factory, budget, connection, spending_aggregator):
    with pytest.raises(InvalidOnboardingStepError) as exc_info:
        orchestrator(db, session_factory, spending_aggregator).run(budget.id)

    assert exc_info.value.step == "start"
    assert current_step(db, budget.id) == OnboardingStep.START


def test_unknown_budget_is_rejected(db, session_factory):
    with pytest.raises(InvalidOnboardingStepError) as exc_info:
        orchestrator(db, session_factory, FakeAggregator()).run(404)

    assert exc_info.value.step is None
