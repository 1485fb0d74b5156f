from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import date
from decimal import Decimal

from budget_sync.models.category import CompositeComponent

# ===== ANALYSIS INPUT MODELS =====

class AnalysisTransaction(BaseModel):
    user_tx_id: str
    transaction_date: date
    amount: Decimal
    category_name: str


class AnalysisCategory(BaseModel):
    name: str
    group_name: str
    is_discretionary: bool = False
    is_composite: bool = False
    composite_data: Optional[List[CompositeComponent]] = None


class AnalysisGoal(BaseModel):
    goal_id: int
    name: str
    amount: Decimal
    target_date: date
    starting_balance: Decimal = Decimal("0")
    # Previously stored tracking, month -> {"allocations": {date: {"amount_target": ...}}}
    spending_tracking: Dict[str, Any] = Field(default_factory=dict)


# ===== ANALYSIS OUTPUT MODELS =====

class CategoryRecommendation(BaseModel):
    category_name: str
    spending: Decimal
    recommendation: Decimal


class GroupRecommendation(BaseModel):
    group_name: str
    spending: Decimal = Decimal("0")
    recommendation: Decimal = Decimal("0")
    categories: List[CategoryRecommendation] = Field(default_factory=list)


class GoalAllocation(BaseModel):
    date_target: str
    amount_target: Decimal


class GoalMonthTracking(BaseModel):
    month: str
    starting_balance: Decimal
    allocations: Dict[str, GoalAllocation] = Field(default_factory=dict)


class GoalTracking(BaseModel):
    goal_id: int
    monthly_amounts: Dict[str, Decimal] = Field(default_factory=dict)
    tracking: Dict[str, GoalMonthTracking] = Field(default_factory=dict)
    required_monthly_contribution: Decimal
    planned_monthly_contribution: Decimal
    projected_completion_month: Optional[str] = None
    on_track: bool = False


class Posture(BaseModel):
    name: str
    # category name -> recommended amount
    spending: Dict[str, Decimal] = Field(default_factory=dict)
    groups: Dict[str, GroupRecommendation] = Field(default_factory=dict)
    # goal id -> projection
    goal_trackings: Dict[str, GoalTracking] = Field(default_factory=dict)


class CategoryTracking(BaseModel):
    category_name: str
    spending_actual: Decimal = Decimal("0")
    spending_target: Decimal = Decimal("0")


class GroupTracking(BaseModel):
    group_name: str
    spending_actual: Decimal = Decimal("0")
    spending_target: Decimal = Decimal("0")
    categories: List[CategoryTracking] = Field(default_factory=list)


class AnalysisTotals(BaseModel):
    income: Decimal
    discretionary: Decimal
    non_discretionary: Decimal


class Recommendation(BaseModel):
    budget_id: int
    window_start: Optional[date] = None
    window_end: Optional[date] = None
    totals: AnalysisTotals
    balanced: Posture
    conservative: Posture
    relaxed: Posture
    # month -> group name -> tracking
    spending_tracking: Dict[str, Dict[str, GroupTracking]] = Field(default_factory=dict)

    def postures(self) -> Dict[str, Posture]:
        return {
            "balanced": self.balanced,
            "conservative": self.conservative,
            "relaxed": self.relaxed,
        }
