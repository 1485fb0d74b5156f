from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from sqlalchemy import update
from typing import Optional, List, Dict, Set
from datetime import datetime

from budget_sync.db.core import (
    BudgetDB, BudgetFinAccountDB, BudgetGoalDB, BudgetRecommendationDB, UserDB,
    OnboardingStep, GoalType, DebtPaymentComponent, NotFoundError
)
from budget_sync.models.budget import BudgetCreate, BudgetGoalCreate, DebtGoalCreate, SavingsGoalCreate
from budget_sync.models.analysis import Recommendation
from budget_sync.logging_config import get_logger

logger = get_logger(__name__)


ALLOWED_TRANSITIONS: Dict[OnboardingStep, Set[OnboardingStep]] = {
    OnboardingStep.START: {OnboardingStep.PLAID, OnboardingStep.MANUAL},
    OnboardingStep.PLAID: {OnboardingStep.MANUAL, OnboardingStep.PROFILE_GOALS},
    OnboardingStep.MANUAL: {OnboardingStep.PLAID, OnboardingStep.PROFILE_GOALS},
    OnboardingStep.PROFILE_GOALS: {OnboardingStep.ANALYZE_SPENDING},
    OnboardingStep.ANALYZE_SPENDING: {OnboardingStep.ANALYZE_SPENDING_IN_PROGRESS, OnboardingStep.PROFILE_GOALS},
    OnboardingStep.ANALYZE_SPENDING_IN_PROGRESS: {OnboardingStep.BUDGET_SETUP, OnboardingStep.ANALYZE_SPENDING},
    OnboardingStep.BUDGET_SETUP: {OnboardingStep.INVITE_MEMBERS, OnboardingStep.END},
    OnboardingStep.INVITE_MEMBERS: {OnboardingStep.END},
    OnboardingStep.END: set(),
}

# Only the analysis orchestrator moves a budget into or out of these
GUARDED_STEPS = {OnboardingStep.ANALYZE_SPENDING_IN_PROGRESS}


# ===== BUDGETS =====

def create_budget(db: Session, user_id: int, budget_data: BudgetCreate) -> BudgetDB:
    """Create a new budget for a user"""
    user = db.query(UserDB).filter(UserDB.id == user_id).first()
    if not user:
        raise NotFoundError(f"User with id {user_id} not found")

    existing = db.query(BudgetDB).filter(
        BudgetDB.user_id == user_id,
        BudgetDB.name == budget_data.name
    ).first()
    if existing:
        raise ValueError(f"Budget name '{budget_data.name}' already exists")

    db_budget = BudgetDB(
        user_id=user_id,
        name=budget_data.name,
        base_currency=budget_data.base_currency,
        onboarding_step=OnboardingStep.START,
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow()
    )

    try:
        db.add(db_budget)
        db.commit()
        db.refresh(db_budget)
        return db_budget
    except IntegrityError:
        db.rollback()
        raise ValueError("Budget creation failed due to database constraint")


def read_budget(db: Session, budget_id: int, user_id: Optional[int] = None) -> Optional[BudgetDB]:
    query = db.query(BudgetDB).filter(BudgetDB.id == budget_id)
    if user_id:
        query = query.filter(BudgetDB.user_id == user_id)
    return query.first()


def transition_onboarding_step(db: Session, budget_id: int, expected: OnboardingStep,
                               target: OnboardingStep) -> bool:
    """
    Move a budget from ``expected`` to ``target`` if it is still in ``expected``.

    A single conditional UPDATE; returns False when the stored step was not
    ``expected``. Raises ValueError for transitions outside ALLOWED_TRANSITIONS.
    """
    if target not in ALLOWED_TRANSITIONS[expected]:
        raise ValueError(f"Cannot move onboarding step from '{expected.value}' to '{target.value}'")

    result = db.execute(
        update(BudgetDB)
        .where(BudgetDB.id == budget_id, BudgetDB.onboarding_step == expected)
        .values(onboarding_step=target, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        return False

    db.commit()
    logger.info(f"Budget {budget_id} onboarding step {expected.value} -> {target.value}")
    return True


def update_onboarding_step(db: Session, budget_id: int, user_id: int, expected: OnboardingStep,
                           target: OnboardingStep) -> BudgetDB:
    """Caller-driven step change; the analysis guard steps are off limits here"""
    budget = read_budget(db, budget_id, user_id)
    if not budget:
        raise NotFoundError(f"Budget with id {budget_id} not found")

    if expected in GUARDED_STEPS or target in GUARDED_STEPS:
        raise ValueError("The analysis step is managed by the analysis run")

    if not transition_onboarding_step(db, budget_id, expected, target):
        raise ValueError(f"Budget is not in onboarding step '{expected.value}'")

    db.refresh(budget)
    return budget


# ===== GOALS =====

def create_budget_goal(db: Session, user_id: int, budget_id: int, goal_data: BudgetGoalCreate) -> BudgetGoalDB:
    """Create a goal tracked against one of the budget's accounts"""
    budget = read_budget(db, budget_id, user_id)
    if not budget:
        raise NotFoundError(f"Budget with id {budget_id} not found")

    link = db.query(BudgetFinAccountDB).filter(
        BudgetFinAccountDB.id == goal_data.budget_fin_account_id,
        BudgetFinAccountDB.budget_id == budget_id
    ).first()
    if not link:
        raise NotFoundError(f"Budget account with id {goal_data.budget_fin_account_id} not found")

    existing = db.query(BudgetGoalDB).filter(
        BudgetGoalDB.budget_id == budget_id,
        BudgetGoalDB.name == goal_data.name
    ).first()
    if existing:
        raise ValueError(f"Goal name '{goal_data.name}' already exists")

    db_goal = BudgetGoalDB(
        budget_id=budget_id,
        budget_fin_account_id=link.id,
        type=GoalType(goal_data.type),
        name=goal_data.name,
        amount=goal_data.amount,
        balance=link.fin_account.balance_current,
        target_date=goal_data.target_date,
        description=goal_data.description,
        spending_tracking={},
    )
    if isinstance(goal_data, SavingsGoalCreate):
        db_goal.subtype = goal_data.subtype.value
    elif isinstance(goal_data, DebtGoalCreate):
        db_goal.subtype = goal_data.subtype.value
        db_goal.debt_interest_rate = goal_data.debt_interest_rate
        db_goal.debt_payment_component = DebtPaymentComponent(goal_data.debt_payment_component.value)

    try:
        db.add(db_goal)
        db.commit()
        db.refresh(db_goal)
        return db_goal
    except IntegrityError:
        db.rollback()
        raise ValueError("Goal creation failed due to database constraint")


def read_budget_goals(db: Session, budget_id: int) -> List[BudgetGoalDB]:
    return db.query(BudgetGoalDB).filter(BudgetGoalDB.budget_id == budget_id).order_by(BudgetGoalDB.id).all()


# ===== RECOMMENDATIONS =====

def save_recommendation(db: Session, recommendation: Recommendation) -> BudgetRecommendationDB:
    """
    Replace the budget's recommendation snapshot.

    Balanced becomes the active spending, and each goal's stored tracking is
    rewritten from the balanced projection. Everything commits together.
    """
    budget_id = recommendation.budget_id
    postures = recommendation.postures()

    spending_recommendations = {
        name: {group: g.model_dump(mode="json") for group, g in posture.groups.items()}
        for name, posture in postures.items()
    }
    goal_recommendations = {
        name: {
            goal_id: tracking.model_dump(mode="json", exclude={"tracking"})
            for goal_id, tracking in posture.goal_trackings.items()
        }
        for name, posture in postures.items()
    }
    spending_tracking = {
        month: {group: g.model_dump(mode="json") for group, g in groups.items()}
        for month, groups in recommendation.spending_tracking.items()
    }
    active_spending = {
        "posture": recommendation.balanced.name,
        "spending": {c: str(a) for c, a in recommendation.balanced.spending.items()},
    }

    try:
        db.query(BudgetRecommendationDB).filter(BudgetRecommendationDB.budget_id == budget_id).delete(
            synchronize_session=False
        )
        db_recommendation = BudgetRecommendationDB(
            budget_id=budget_id,
            spending_recommendations=spending_recommendations,
            goal_recommendations=goal_recommendations,
            spending_tracking=spending_tracking,
            active_spending=active_spending,
            generated_at=datetime.utcnow(),
        )
        db.add(db_recommendation)

        for goal in read_budget_goals(db, budget_id):
            tracking = recommendation.balanced.goal_trackings.get(str(goal.id))
            goal.spending_tracking = {
                month: entry.model_dump(mode="json") for month, entry in tracking.tracking.items()
            } if tracking else {}
            goal.updated_at = datetime.utcnow()

        db.commit()
        db.refresh(db_recommendation)
        return db_recommendation
    except IntegrityError:
        db.rollback()
        raise ValueError("Saving the recommendation failed due to database constraint")


def read_recommendation(db: Session, budget_id: int) -> Optional[BudgetRecommendationDB]:
    return db.query(BudgetRecommendationDB).filter(BudgetRecommendationDB.budget_id == budget_id).first()
