from pydantic import BaseModel, Field, field_validator
from typing import Optional, Union, Literal, Dict, Any
from typing_extensions import Annotated
from datetime import datetime, date
from decimal import Decimal
from enum import Enum

# ===== BUDGET PYDANTIC MODELS =====

class OnboardingStepEnum(str, Enum):
    START = "start"
    PLAID = "plaid"
    MANUAL = "manual"
    PROFILE_GOALS = "profile_goals"
    ANALYZE_SPENDING = "analyze_spending"
    ANALYZE_SPENDING_IN_PROGRESS = "analyze_spending_in_progress"
    BUDGET_SETUP = "budget_setup"
    INVITE_MEMBERS = "invite_members"
    END = "end"


class BudgetCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255, description="Budget name")
    base_currency: str = Field("USD", min_length=3, max_length=3, description="Default currency for manual entries")

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        return v.strip()

    @field_validator('base_currency')
    @classmethod
    def validate_currency(cls, v: str) -> str:
        return v.upper()


class BudgetResponse(BaseModel):
    id: int
    name: str
    base_currency: str
    onboarding_step: OnboardingStepEnum
    created_at: datetime
    updated_at: datetime

    @field_validator('onboarding_step', mode='before')
    @classmethod
    def validate_step(cls, v):
        return getattr(v, "value", v)

    class Config:
        from_attributes = True


class OnboardingStepUpdate(BaseModel):
    expected: OnboardingStepEnum = Field(..., description="Step the caller believes the budget is in")
    target: OnboardingStepEnum = Field(..., description="Step to move to")


# ===== GOAL PYDANTIC MODELS =====

class SavingsSubtypeEnum(str, Enum):
    EMERGENCY_FUND = "emergency_fund"
    HOUSE = "house"
    RETIREMENT = "retirement"
    EDUCATION = "education"
    VACATION = "vacation"
    GENERAL = "general"


class DebtSubtypeEnum(str, Enum):
    LOAN = "loan"
    CREDIT_CARD = "credit_card"


class DebtPaymentComponentEnum(str, Enum):
    PRINCIPAL = "principal"
    INTEREST = "interest"
    PRINCIPAL_INTEREST = "principal_interest"


class GoalBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255, description="Goal name")
    amount: Decimal = Field(..., gt=0, description="Amount to put toward the goal")
    budget_fin_account_id: int = Field(..., description="Budget account whose balance tracks the goal")
    target_date: date = Field(..., description="Date the goal should be reached")
    description: Optional[str] = Field(None, description="Free-text description")

    @field_validator('amount')
    @classmethod
    def validate_amount(cls, v: Decimal) -> Decimal:
        return round(v, 2)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        return v.strip()


class SavingsGoalCreate(GoalBase):
    type: Literal["savings"] = "savings"
    subtype: SavingsSubtypeEnum = SavingsSubtypeEnum.GENERAL


class DebtGoalCreate(GoalBase):
    type: Literal["debt"] = "debt"
    subtype: DebtSubtypeEnum
    debt_interest_rate: Decimal = Field(..., ge=0, le=100, description="Annual interest rate, percent")
    debt_payment_component: DebtPaymentComponentEnum = DebtPaymentComponentEnum.PRINCIPAL_INTEREST


class InvestmentGoalCreate(GoalBase):
    type: Literal["investment"] = "investment"


class CharityGoalCreate(GoalBase):
    type: Literal["charity"] = "charity"


BudgetGoalCreate = Annotated[
    Union[SavingsGoalCreate, DebtGoalCreate, InvestmentGoalCreate, CharityGoalCreate],
    Field(discriminator="type"),
]


class BudgetGoalResponse(BaseModel):
    id: int
    budget_id: int
    budget_fin_account_id: int
    type: str
    name: str
    amount: Decimal
    balance: Optional[Decimal] = None
    target_date: date
    description: Optional[str] = None
    subtype: Optional[str] = None
    debt_interest_rate: Optional[Decimal] = None
    debt_payment_component: Optional[DebtPaymentComponentEnum] = None
    spending_tracking: Optional[Dict[str, Any]] = None

    @field_validator('type', 'debt_payment_component', mode='before')
    @classmethod
    def validate_enums(cls, v):
        return getattr(v, "value", v)

    class Config:
        from_attributes = True


class BudgetRecommendationResponse(BaseModel):
    budget_id: int
    spending_recommendations: Dict[str, Any]
    goal_recommendations: Dict[str, Any]
    spending_tracking: Dict[str, Any]
    active_spending: Dict[str, Any]
    generated_at: datetime

    class Config:
        from_attributes = True
