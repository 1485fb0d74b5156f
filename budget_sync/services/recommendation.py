"""
Spending analysis and budget recommendations.

Aggregates a budget's transactions by category over the latest rolling
window and derives three postures from it. Non-discretionary categories
keep their observed amounts in every posture; discretionary categories are
scaled per posture. Each posture also carries a monthly allocation plan and
tracking projection for every goal.

The engine is a pure function of its inputs plus the injected ``today``.
"""
from datetime import date, timedelta
from decimal import Decimal, ROUND_CEILING, ROUND_DOWN, ROUND_HALF_UP
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field, model_validator

from budget_sync.models.analysis import (
    AnalysisCategory,
    AnalysisGoal,
    AnalysisTotals,
    AnalysisTransaction,
    CategoryRecommendation,
    CategoryTracking,
    GoalAllocation,
    GoalMonthTracking,
    GoalTracking,
    GroupRecommendation,
    GroupTracking,
    Posture,
    Recommendation,
)
from budget_sync.logging_config import get_logger

logger = get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0")
DAYS_PER_MONTH = Decimal("30.44")
ROLLING_WINDOW_DAYS = 30
ALLOCATION_DAY = 25
INCOME_GROUP = "income"
OTHER_GROUP = "Other"

BALANCED = "balanced"
CONSERVATIVE = "conservative"
RELAXED = "relaxed"


class PostureFactors(BaseModel):
    """Tunable scaling for discretionary spend, as fractions of the discretionary total."""
    conservative_min_reduction: Decimal = Field(Decimal("0.20"), ge=0, le=1)
    conservative_max_reduction: Decimal = Field(Decimal("0.60"), ge=0, le=1)
    balanced_max_reduction: Decimal = Field(Decimal("0.50"), ge=0, le=1)
    relaxed_max_reduction: Decimal = Field(Decimal("0.40"), ge=0, le=1)
    relaxed_max_increase: Decimal = Field(Decimal("0.20"), ge=0)

    @model_validator(mode='after')
    def validate_ordering(self):
        if not (self.relaxed_max_reduction <= self.balanced_max_reduction <= self.conservative_max_reduction):
            raise ValueError('Reduction caps must satisfy relaxed <= balanced <= conservative')
        if self.conservative_min_reduction > self.conservative_max_reduction:
            raise ValueError('conservative_min_reduction cannot exceed conservative_max_reduction')
        return self


# ===== MONEY & CALENDAR HELPERS =====

def to_cents(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def floor_cents(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_DOWN)


def month_key(value: date) -> str:
    return value.strftime("%Y-%m")


def add_months(key: str, count: int) -> str:
    year, month = (int(part) for part in key.split("-"))
    total = (month - 1) + count
    return f"{year + total // 12:04d}-{total % 12 + 1:02d}"


def month_range(first: str, last: str) -> List[str]:
    months = []
    current = first
    while current <= last:
        months.append(current)
        current = add_months(current, 1)
    return months


def calculate_monthly_allocations_with_remainder(total: Decimal, month_count: int) -> List[Decimal]:
    """Split ``total`` into ``month_count`` cent amounts, floored, with the remainder in the last month."""
    if month_count <= 0:
        return []
    total = to_cents(total)
    per_month = floor_cents(total / month_count)
    allocations = [per_month] * (month_count - 1)
    allocations.append(total - per_month * (month_count - 1))
    return allocations


def ceil_int(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


class RecommendationEngine:

    def __init__(self, categories: Iterable[AnalysisCategory], today: Optional[date] = None,
                 factors: Optional[PostureFactors] = None):
        self.categories: Dict[str, AnalysisCategory] = {c.name: c for c in categories}
        self.today = today or date.today()
        self.factors = factors or PostureFactors()

        group_names = {c.group_name for c in self.categories.values()}
        group_names.add(OTHER_GROUP)
        self.group_names = sorted(group_names)

    # ===== CATEGORY LOOKUPS =====

    def group_of(self, category_name: str) -> str:
        category = self.categories.get(category_name)
        return category.group_name if category else OTHER_GROUP

    def is_income(self, category_name: str) -> bool:
        return self.group_of(category_name).lower() == INCOME_GROUP

    def is_discretionary(self, category_name: str) -> bool:
        category = self.categories.get(category_name)
        return bool(category and category.is_discretionary)

    def signed_amount(self, category_name: str, amount: Decimal) -> Decimal:
        """Income is carried as negative spending."""
        return -abs(amount) if self.is_income(category_name) else amount

    # ===== ENTRY POINT =====

    def recommend(
        self,
        transactions: List[AnalysisTransaction],
        category_spending_totals: Optional[Dict[str, Decimal]],
        goals: List[AnalysisGoal],
        budget_id: int,
    ) -> Recommendation:
        """
        Build the three postures, goal projections and monthly tracking.

        ``category_spending_totals`` replaces the rolling-window totals when
        given. Calling this twice with equal inputs and the same ``today``
        yields equal results.
        """
        ordered = sorted(transactions, key=lambda t: (t.transaction_date, t.user_tx_id))
        window_start, window_end, window = self._rolling_window(ordered)

        if category_spending_totals is not None:
            base_spending = {name: Decimal(amount) for name, amount in category_spending_totals.items()}
        else:
            base_spending = {}
            for tx in window:
                base_spending[tx.category_name] = base_spending.get(tx.category_name, ZERO) + tx.amount
        base_spending = {
            name: self.signed_amount(name, amount) for name, amount in sorted(base_spending.items())
        }

        totals = self._totals(base_spending)
        base_goal_plans = {goal.goal_id: self._base_goal_plan(goal) for goal in goals}

        postures = {
            name: self._scale_discretionary(name, base_spending, totals)
            for name in (BALANCED, CONSERVATIVE, RELAXED)
        }

        # Cent rounding must never invert the posture ordering for a category
        for category_name, amount in postures[BALANCED].items():
            if self.is_discretionary(category_name):
                postures[CONSERVATIVE][category_name] = min(postures[CONSERVATIVE][category_name], amount)
                postures[RELAXED][category_name] = max(postures[RELAXED][category_name], amount)

        results = {}
        for name, spending in postures.items():
            adjusted_discretionary = totals.discretionary + sum(
                (spending[c] - base_spending[c] for c in spending if self.is_discretionary(c)), ZERO
            )
            available = totals.income - totals.non_discretionary - adjusted_discretionary
            monthly_plans = self._apply_goal_strategy(name, base_goal_plans, goals, available)
            results[name] = Posture(
                name=name,
                spending={c: to_cents(a) for c, a in spending.items()},
                groups=self._group_recommendations(base_spending, spending),
                goal_trackings={
                    str(goal.goal_id): self._goal_tracking(goal, base_goal_plans[goal.goal_id], monthly_plans[goal.goal_id])
                    for goal in sorted(goals, key=lambda g: g.goal_id)
                },
            )

        recommendation = Recommendation(
            budget_id=budget_id,
            window_start=window_start,
            window_end=window_end,
            totals=AnalysisTotals(
                income=to_cents(totals.income),
                discretionary=to_cents(totals.discretionary),
                non_discretionary=to_cents(totals.non_discretionary),
            ),
            balanced=results[BALANCED],
            conservative=results[CONSERVATIVE],
            relaxed=results[RELAXED],
            spending_tracking=self.calculate_spending_tracking(ordered),
        )
        logger.info(
            f"Budget {budget_id}: income {recommendation.totals.income}, "
            f"discretionary {recommendation.totals.discretionary}, "
            f"non-discretionary {recommendation.totals.non_discretionary}, {len(goals)} goals"
        )
        return recommendation

    # ===== SPENDING =====

    def _rolling_window(self, ordered: List[AnalysisTransaction]) -> Tuple[Optional[date], Optional[date], List[AnalysisTransaction]]:
        if not ordered:
            return None, None, []
        window_end = ordered[-1].transaction_date
        window_start = window_end - timedelta(days=ROLLING_WINDOW_DAYS)
        return window_start, window_end, [t for t in ordered if t.transaction_date >= window_start]

    def _totals(self, spending: Dict[str, Decimal]) -> AnalysisTotals:
        income = discretionary = non_discretionary = ZERO
        for category_name, amount in spending.items():
            if self.is_income(category_name):
                income += abs(amount)
            elif self.is_discretionary(category_name):
                discretionary += abs(amount)
            else:
                non_discretionary += abs(amount)
        return AnalysisTotals(income=income, discretionary=discretionary, non_discretionary=non_discretionary)

    def _scale_discretionary(self, posture: str, base: Dict[str, Decimal],
                             totals: AnalysisTotals) -> Dict[str, Decimal]:
        """Category amounts for one posture; only positive discretionary spend is scaled."""
        spending = dict(base)
        scalable = [(c, a) for c, a in base.items() if self.is_discretionary(c) and a > 0]
        scalable_total = sum((a for _, a in scalable), ZERO)
        if scalable_total <= 0:
            return spending

        desired = totals.non_discretionary + totals.discretionary
        deficit = max(ZERO, desired - totals.income)
        surplus = totals.income - desired
        f = self.factors

        if posture == CONSERVATIVE:
            reduction = min(max(f.conservative_min_reduction * scalable_total, deficit),
                            f.conservative_max_reduction * scalable_total)
            change = -reduction
        elif posture == BALANCED:
            change = -min(deficit, f.balanced_max_reduction * scalable_total)
        elif surplus >= 0:
            change = min(f.relaxed_max_increase * scalable_total, surplus)
        else:
            change = -min(deficit, f.relaxed_max_reduction * scalable_total)

        change = to_cents(change)
        if change == 0:
            return spending

        # Largest categories first, rounding remainder lands on the last one
        scalable.sort(key=lambda item: (-item[1], item[0]))
        applied = ZERO
        for index, (category_name, amount) in enumerate(scalable):
            if index == len(scalable) - 1:
                share = change - applied
            else:
                share = to_cents(change * amount / scalable_total)
                applied += share
            spending[category_name] = to_cents(amount + share)
        return spending

    def _group_recommendations(self, base: Dict[str, Decimal],
                               spending: Dict[str, Decimal]) -> Dict[str, GroupRecommendation]:
        groups = {name: GroupRecommendation(group_name=name) for name in self.group_names}
        for category_name in sorted(spending):
            group = groups.setdefault(self.group_of(category_name), GroupRecommendation(group_name=self.group_of(category_name)))
            group.categories.append(CategoryRecommendation(
                category_name=category_name,
                spending=to_cents(base[category_name]),
                recommendation=to_cents(spending[category_name]),
            ))
            group.spending += to_cents(base[category_name])
            group.recommendation += to_cents(spending[category_name])
        return dict(sorted(groups.items()))

    def calculate_spending_tracking(self, ordered: List[AnalysisTransaction]) -> Dict[str, Dict[str, GroupTracking]]:
        """Month -> group -> actual spend, from the first transaction month through the current month."""
        if not ordered:
            return {}

        last_month = max(month_key(self.today), month_key(ordered[-1].transaction_date))
        tracking: Dict[str, Dict[str, GroupTracking]] = {}
        for month in month_range(month_key(ordered[0].transaction_date), last_month):
            tracking[month] = {name: GroupTracking(group_name=name) for name in self.group_names}

        for tx in ordered:
            month = tracking[month_key(tx.transaction_date)]
            for category_name, amount in self._split_composite(tx.category_name, tx.amount):
                amount = self.signed_amount(category_name, amount)
                group_name = self.group_of(category_name)
                group = month.setdefault(group_name, GroupTracking(group_name=group_name))
                group.spending_actual += amount
                group.spending_target += amount

                category = next((c for c in group.categories if c.category_name == category_name), None)
                if category is None:
                    category = CategoryTracking(category_name=category_name)
                    group.categories.append(category)
                category.spending_actual += amount
                category.spending_target += amount

        for month in tracking.values():
            for group in month.values():
                group.spending_actual = to_cents(group.spending_actual)
                group.spending_target = to_cents(group.spending_target)
                group.categories.sort(key=lambda c: c.category_name)
                for category in group.categories:
                    category.spending_actual = to_cents(category.spending_actual)
                    category.spending_target = to_cents(category.spending_target)
        return {month: dict(sorted(groups.items())) for month, groups in tracking.items()}

    def _split_composite(self, category_name: str, amount: Decimal) -> List[Tuple[str, Decimal]]:
        category = self.categories.get(category_name)
        if not category or not category.is_composite or not category.composite_data:
            return [(category_name, amount)]
        return [(component.category_name, amount * component.weight / Decimal("100"))
                for component in category.composite_data]

    # ===== GOALS =====

    def _base_goal_plan(self, goal: AnalysisGoal) -> Dict[str, Decimal]:
        """Even monthly amounts from the start month up to the target date."""
        start = self.today.replace(day=1)
        if self.today.day >= goal.target_date.day:
            start = (start + timedelta(days=32)).replace(day=1)

        days = (goal.target_date - start).days
        months = max(1, int((Decimal(days) / DAYS_PER_MONTH).to_integral_value(rounding=ROUND_DOWN)))
        monthly = goal.amount / months
        first = month_key(start)
        return {add_months(first, i): monthly for i in range(months)}

    def _apply_goal_strategy(self, posture: str, base_plans: Dict[int, Dict[str, Decimal]],
                             goals: List[AnalysisGoal], available: Decimal) -> Dict[int, Dict[str, Decimal]]:
        if available <= 0:
            return {goal.goal_id: {} for goal in goals}

        first_amounts = {gid: next(iter(plan.values()), ZERO) for gid, plan in base_plans.items()}
        total_monthly = sum(first_amounts.values(), ZERO)

        plans = {}
        for goal in goals:
            base = base_plans[goal.goal_id]
            months = sorted(base)
            if not months:
                plans[goal.goal_id] = {}
                continue

            total_needed = goal.amount
            count = len(months)

            if posture == RELAXED:
                if total_monthly > available:
                    total_needed = total_needed * available / total_monthly
            elif available < total_monthly:
                count = ceil_int(count * total_monthly / available)
            elif posture == CONSERVATIVE and total_monthly > 0:
                increased = floor_cents(available * first_amounts[goal.goal_id] / total_monthly)
                if increased > 0:
                    count = min(count, max(1, ceil_int(total_needed / increased)))

            allocations = calculate_monthly_allocations_with_remainder(total_needed, count)
            plans[goal.goal_id] = {add_months(months[0], i): amount for i, amount in enumerate(allocations)}
        return plans

    def _goal_tracking(self, goal: AnalysisGoal, base_plan: Dict[str, Decimal],
                       monthly_amounts: Dict[str, Decimal]) -> GoalTracking:
        tracking: Dict[str, GoalMonthTracking] = {}
        for index, month in enumerate(sorted(monthly_amounts)):
            planned = monthly_amounts[month]
            entry = GoalMonthTracking(
                month=month,
                starting_balance=to_cents(goal.starting_balance) if index == 0 else ZERO,
            )
            previous = (goal.spending_tracking.get(month) or {}).get("allocations") or {}
            if not previous:
                if planned > 0:
                    day = f"{month}-{ALLOCATION_DAY}"
                    entry.allocations[day] = GoalAllocation(date_target=day, amount_target=planned)
            else:
                previous_total = sum((Decimal(str(a.get("amount_target", 0))) for a in previous.values()), ZERO)
                for day in sorted(previous):
                    allocation = previous[day]
                    adjusted = ZERO
                    if previous_total > 0:
                        adjusted = to_cents(Decimal(str(allocation.get("amount_target", 0))) * planned / previous_total)
                    entry.allocations[day] = GoalAllocation(
                        date_target=allocation.get("date_target") or day,
                        amount_target=adjusted,
                    )
            tracking[month] = entry

        required = to_cents(next(iter(base_plan.values()), ZERO))
        months = sorted(monthly_amounts)
        funded = sum(monthly_amounts.values(), ZERO)
        completion = months[-1] if months else None
        return GoalTracking(
            goal_id=goal.goal_id,
            monthly_amounts={m: to_cents(monthly_amounts[m]) for m in months},
            tracking=tracking,
            required_monthly_contribution=required,
            planned_monthly_contribution=to_cents(monthly_amounts[months[0]]) if months else ZERO,
            projected_completion_month=completion,
            on_track=bool(completion) and completion <= month_key(goal.target_date) and to_cents(funded) >= to_cents(goal.amount),
        )
