from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import Callable, List

from budget_sync.crud import crud_budget
from budget_sync.db.core import get_db, get_session_factory, NotFoundError, OnboardingStep
from budget_sync.models import budget as budget_models
from budget_sync.routers.accounts import get_current_user_id
from budget_sync.services.aggregator import AggregatorClient, get_aggregator
from budget_sync.services.orchestration import (
    AnalysisError, AnalysisInProgressError, AnalysisOutcome, BudgetAnalysisOrchestrator,
    InvalidOnboardingStepError
)
from budget_sync.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/budgets",
    tags=["budgets"],
)

# ===== BUDGETS =====

@router.post("/", response_model=budget_models.BudgetResponse, status_code=status.HTTP_201_CREATED)
def create_budget(
    budget: budget_models.BudgetCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    """
    Create a new budget for the current user.
    """
    try:
        return crud_budget.create_budget(db=db, user_id=user_id, budget_data=budget)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

@router.get("/{budget_id}", response_model=budget_models.BudgetResponse)
def read_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    db_budget = crud_budget.read_budget(db=db, budget_id=budget_id, user_id=user_id)
    if db_budget is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Budget not found")
    return db_budget

@router.put("/{budget_id}/onboarding-step", response_model=budget_models.BudgetResponse)
def update_onboarding_step(
    budget_id: int,
    step: budget_models.OnboardingStepUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    """
    Move the budget to another onboarding step.

    - **expected**: The step the caller believes the budget is in; the move fails if it is not.
    - **target**: The step to move to.
    """
    try:
        return crud_budget.update_onboarding_step(
            db=db,
            budget_id=budget_id,
            user_id=user_id,
            expected=OnboardingStep(step.expected.value),
            target=OnboardingStep(step.target.value),
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

# ===== GOALS =====

@router.post("/{budget_id}/goals", response_model=budget_models.BudgetGoalResponse, status_code=status.HTTP_201_CREATED)
def create_goal(
    budget_id: int,
    goal: budget_models.BudgetGoalCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    """
    Create a savings, debt, investment or charity goal tracked against a budget account.
    """
    try:
        return crud_budget.create_budget_goal(db=db, user_id=user_id, budget_id=budget_id, goal_data=goal)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

@router.get("/{budget_id}/goals", response_model=List[budget_models.BudgetGoalResponse])
def read_goals(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    if crud_budget.read_budget(db=db, budget_id=budget_id, user_id=user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Budget not found")
    return crud_budget.read_budget_goals(db=db, budget_id=budget_id)

# ===== ANALYSIS =====

@router.post("/{budget_id}/analysis", response_model=AnalysisOutcome)
def analyze_spending(
    budget_id: int,
    db: Session = Depends(get_db),
    aggregator: AggregatorClient = Depends(get_aggregator),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    user_id: int = Depends(get_current_user_id)
):
    """
    Sync the budget's connections and compute fresh spending recommendations.

    Only one run per budget at a time; a concurrent request gets 409.
    On success the budget moves on to budget setup.
    """
    if crud_budget.read_budget(db=db, budget_id=budget_id, user_id=user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Budget not found")

    orchestrator = BudgetAnalysisOrchestrator(db, aggregator, session_factory)
    try:
        return orchestrator.run(budget_id)
    except AnalysisInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except InvalidOnboardingStepError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AnalysisError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

@router.get("/{budget_id}/recommendations", response_model=budget_models.BudgetRecommendationResponse)
def read_recommendations(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    """
    Retrieve the latest recommendation snapshot for the budget.
    """
    if crud_budget.read_budget(db=db, budget_id=budget_id, user_id=user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Budget not found")
    db_recommendation = crud_budget.read_recommendation(db=db, budget_id=budget_id)
    if db_recommendation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No recommendations yet")
    return db_recommendation
