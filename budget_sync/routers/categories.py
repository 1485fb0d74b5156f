from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List

from budget_sync.crud import crud_budget, crud_category
from budget_sync.models import category as category_models
from budget_sync.db.core import get_db, NotFoundError
from budget_sync.routers.accounts import get_current_user_id

router = APIRouter(
    prefix="/budgets",
    tags=["categories"],
)

@router.post("/{budget_id}/categories", response_model=category_models.CategoryResponse, status_code=status.HTTP_201_CREATED)
def create_category(
    budget_id: int,
    category: category_models.CategoryCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    """
    Create a custom category for the budget.

    Composite categories split their amounts across existing categories by weight.
    """
    if crud_budget.read_budget(db=db, budget_id=budget_id, user_id=user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Budget not found")
    try:
        return crud_category.create_budget_category(db=db, budget_id=budget_id, category_data=category)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

@router.get("/{budget_id}/categories", response_model=List[category_models.CategoryResponse])
def read_categories(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    """
    Retrieve the built-in categories plus the budget's own.
    """
    if crud_budget.read_budget(db=db, budget_id=budget_id, user_id=user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Budget not found")
    return crud_category.read_categories_for_budget(db=db, budget_id=budget_id)
