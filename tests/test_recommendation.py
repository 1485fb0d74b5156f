import pytest
from datetime import date
from decimal import Decimal
from pydantic import ValidationError

from budget_sync.models.analysis import AnalysisCategory, AnalysisGoal, AnalysisTransaction
from budget_sync.models.category import CompositeComponent
from budget_sync.services.recommendation import (
    PostureFactors,
    RecommendationEngine,
    add_months,
    calculate_monthly_allocations_with_remainder,
)

from tests.factories import TODAY, on

CATEGORIES = [
    AnalysisCategory(name="Income", group_name="Income"),
    AnalysisCategory(name="Rent", group_name="Rent & Utilities"),
    AnalysisCategory(name="Shopping", group_name="General Merchandise", is_discretionary=True),
    AnalysisCategory(name="Groceries", group_name="Food & Drink"),
    AnalysisCategory(
        name="Household",
        group_name="Other",
        is_composite=True,
        composite_data=[
            CompositeComponent(category_name="Groceries", weight=Decimal("50")),
            CompositeComponent(category_name="Rent", weight=Decimal("50")),
        ],
    ),
]


def tx(user_tx_id, category_name, amount, day):
    return AnalysisTransaction(user_tx_id=user_tx_id, transaction_date=on(day), amount=Decimal(amount),
                               category_name=category_name)


def month_of_spending(income=None):
    transactions = [tx("rent", "Rent", "1000", 1), tx("shop", "Shopping", "500", 10)]
    if income is not None:
        transactions.append(tx("pay", "Income", income, 5))
    return transactions


def vacation_goal(**overrides):
    fields = dict(goal_id=1, name="Vacation", amount=Decimal("600"), target_date=date(2027, 4, 10))
    fields.update(overrides)
    return AnalysisGoal(**fields)


def engine(today=TODAY):
    return RecommendationEngine(CATEGORIES, today=today)


def test_postures_scale_discretionary_spend_without_income():
    transactions = [tx("rent", "Rent", "500", 1), tx("shop", "Shopping", "1000", 2)]

    recommendation = engine().recommend(transactions, None, [], budget_id=1)

    assert recommendation.conservative.spending["Shopping"] == Decimal("400.00")
    assert recommendation.balanced.spending["Shopping"] == Decimal("500.00")
    assert recommendation.relaxed.spending["Shopping"] == Decimal("600.00")
    for posture in recommendation.postures().values():
        assert posture.spending["Rent"] == Decimal("500.00")


def test_postures_with_surplus_income():
    recommendation = engine().recommend(month_of_spending(income="3000"), None, [vacation_goal()], budget_id=1)

    assert recommendation.totals.income == Decimal("3000.00")
    assert recommendation.totals.discretionary == Decimal("500.00")
    assert recommendation.totals.non_discretionary == Decimal("1000.00")
    assert recommendation.conservative.spending["Shopping"] == Decimal("400.00")
    assert recommendation.balanced.spending["Shopping"] == Decimal("500.00")
    assert recommendation.relaxed.spending["Shopping"] == Decimal("600.00")
    assert recommendation.window_end == on(10)
    assert recommendation.window_start == date(2026, 9, 10)


def test_goal_plan_spreads_evenly_until_target_month():
    recommendation = engine().recommend(month_of_spending(income="3000"), None, [vacation_goal()], budget_id=1)

    balanced = recommendation.balanced.goal_trackings["1"]
    assert balanced.monthly_amounts == {
        "2026-11": Decimal("120.00"),
        "2026-12": Decimal("120.00"),
        "2027-01": Decimal("120.00"),
        "2027-02": Decimal("120.00"),
        "2027-03": Decimal("120.00"),
    }
    assert balanced.on_track is True
    assert balanced.required_monthly_contribution == Decimal("120.00")
    assert balanced.projected_completion_month == "2027-03"
    assert balanced.tracking["2026-11"].allocations["2026-11-25"].amount_target == Decimal("120")

    assert recommendation.relaxed.goal_trackings["1"].monthly_amounts == balanced.monthly_amounts


def test_conservative_posture_front_loads_goals():
    recommendation = engine().recommend(month_of_spending(income="3000"), None, [vacation_goal()], budget_id=1)

    conservative = recommendation.conservative.goal_trackings["1"]
    assert conservative.monthly_amounts == {"2026-11": Decimal("600.00")}
    assert conservative.on_track is True


def test_tight_budget_stretches_or_drops_goal_plans():
    recommendation = engine().recommend(month_of_spending(income="1560"), None, [vacation_goal()], budget_id=1)

    balanced = recommendation.balanced.goal_trackings["1"]
    assert list(balanced.monthly_amounts) == [add_months("2026-11", i) for i in range(10)]
    assert set(balanced.monthly_amounts.values()) == {Decimal("60.00")}
    assert balanced.projected_completion_month == "2027-08"
    assert balanced.on_track is False

    relaxed = recommendation.relaxed
    assert relaxed.spending["Shopping"] == Decimal("560.00")
    assert relaxed.goal_trackings["1"].monthly_amounts == {}
    assert relaxed.goal_trackings["1"].on_track is False


def test_goal_target_later_in_month_starts_this_month():
    goal = vacation_goal(target_date=date(2027, 4, 20))

    recommendation = engine().recommend(month_of_spending(income="3000"), None, [goal], budget_id=1)

    assert next(iter(recommendation.balanced.goal_trackings["1"].monthly_amounts)) == "2026-10"


def test_existing_allocations_are_rescaled():
    goal = vacation_goal(spending_tracking={
        "2026-11": {"allocations": {
            "2026-11-10": {"date_target": "2026-11-10", "amount_target": "50"},
            "2026-11-25": {"date_target": "2026-11-25", "amount_target": "50"},
        }},
    })

    recommendation = engine().recommend(month_of_spending(income="3000"), None, [goal], budget_id=1)

    allocations = recommendation.balanced.goal_trackings["1"].tracking["2026-11"].allocations
    assert {day: a.amount_target for day, a in allocations.items()} == {
        "2026-11-10": Decimal("60.00"),
        "2026-11-25": Decimal("60.00"),
    }


def test_starting_balance_lands_on_first_month():
    goal = vacation_goal(starting_balance=Decimal("75"))

    recommendation = engine().recommend(month_of_spending(income="3000"), None, [goal], budget_id=1)

    tracking = recommendation.balanced.goal_trackings["1"].tracking
    assert tracking["2026-11"].starting_balance == Decimal("75.00")
    assert tracking["2026-12"].starting_balance == Decimal("0")


def test_spending_tracking_by_month_and_group():
    transactions = month_of_spending(income="3000") + [tx("split", "Household", "100", 12)]

    recommendation = engine().recommend(transactions, None, [], budget_id=1)

    assert list(recommendation.spending_tracking) == ["2026-10"]
    october = recommendation.spending_tracking["2026-10"]
    assert october["Income"].spending_actual == Decimal("-3000.00")
    assert october["Rent & Utilities"].spending_actual == Decimal("1050.00")
    assert october["Food & Drink"].spending_actual == Decimal("50.00")
    assert october["General Merchandise"].categories[0].spending_actual == Decimal("500.00")


def test_spending_tracking_runs_through_current_month():
    recommendation = engine(today=date(2026, 12, 2)).recommend(month_of_spending(), None, [], budget_id=1)

    assert list(recommendation.spending_tracking) == ["2026-10", "2026-11", "2026-12"]


def test_explicit_category_totals_replace_the_window():
    recommendation = engine().recommend(
        month_of_spending(), {"Rent": Decimal("500"), "Shopping": Decimal("1000")}, [], budget_id=1
    )

    assert recommendation.totals.discretionary == Decimal("1000.00")
    assert recommendation.balanced.spending["Shopping"] == Decimal("500.00")


def test_same_inputs_give_identical_output():
    transactions = month_of_spending(income="1560")
    goals = [vacation_goal(), vacation_goal(goal_id=2, name="Car", amount=Decimal("1000"), target_date=date(2027, 10, 1))]

    first = engine().recommend(transactions, None, goals, budget_id=7)
    second = engine().recommend(list(reversed(transactions)), None, goals, budget_id=7)

    assert first.model_dump_json() == second.model_dump_json()


def test_no_transactions_gives_empty_analysis():
    recommendation = engine().recommend([], None, [], budget_id=1)

    assert recommendation.window_start is None
    assert recommendation.spending_tracking == {}
    assert recommendation.balanced.spending == {}


def test_allocations_put_remainder_in_last_month():
    assert calculate_monthly_allocations_with_remainder(Decimal("100"), 3) == [
        Decimal("33.33"), Decimal("33.33"), Decimal("33.34")
    ]
    assert calculate_monthly_allocations_with_remainder(Decimal("100"), 0) == []


def test_posture_factors_must_stay_ordered():
    with pytest.raises(ValidationError):
        PostureFactors(relaxed_max_reduction=Decimal("0.9"))


def test_custom_factors_change_the_scaling():
    factors = PostureFactors(conservative_min_reduction=Decimal("0.50"))
    transactions = month_of_spending(income="3000")

    recommendation = RecommendationEngine(CATEGORIES, today=TODAY, factors=factors).recommend(
        transactions, None, [], budget_id=1
    )

    assert recommendation.conservative.spending["Shopping"] == Decimal("250.00")


@pytest.mark.parametrize("income", [None, "400", "1200", "1560", "3000", "12000"])
def test_posture_ordering_holds_at_any_income(income):
    transactions = month_of_spending(income=income) + [tx("split", "Household", "80", 12)]

    recommendation = engine().recommend(transactions, None, [vacation_goal()], budget_id=1)

    conservative, balanced, relaxed = (recommendation.conservative.spending, recommendation.balanced.spending,
                                       recommendation.relaxed.spending)
    assert conservative["Shopping"] <= balanced["Shopping"] <= relaxed["Shopping"]
    for name in ("Rent", "Household"):
        assert conservative[name] == balanced[name] == relaxed[name]
