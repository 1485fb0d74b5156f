from fastapi import APIRouter, Depends, HTTPException, status, Response
from sqlalchemy.orm import Session
from typing import List

from budget_sync.crud import crud_account
from budget_sync.models import account as account_models
from budget_sync.db.core import get_db, NotFoundError

router = APIRouter(
    prefix="/budgets",
    tags=["accounts"],
)

# This is a placeholder for a proper authentication dependency.
# In a real app, this would decode a JWT token to get the current user.
def get_current_user_id() -> int:
    return 1

@router.post("/{budget_id}/accounts", response_model=account_models.FinAccountResponse, status_code=status.HTTP_201_CREATED)
def create_manual_account(
    budget_id: int,
    account: account_models.ManualAccountCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    """
    Create a manually tracked account and link it to the budget.

    The institution is created on first use of its name and symbol.
    """
    try:
        return crud_account.create_manual_account(db=db, user_id=user_id, account_data=account, budget_id=budget_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

@router.get("/{budget_id}/accounts", response_model=List[account_models.FinAccountResponse])
def read_budget_accounts(
    budget_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    """
    Retrieve every account linked to the budget.
    """
    return crud_account.read_budget_accounts(db=db, budget_id=budget_id)

@router.put("/{budget_id}/accounts/{account_id}", response_model=account_models.BudgetFinAccountResponse)
def link_account(
    budget_id: int,
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    """
    Link an existing account to the budget. Linking twice is a no-op.
    """
    try:
        return crud_account.link_account_to_budget(db=db, user_id=user_id, budget_id=budget_id, account_id=account_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

@router.delete("/{budget_id}/accounts/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
def unlink_account(
    budget_id: int,
    account_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    """
    Remove an account from the budget. Removing an absent link succeeds.
    """
    try:
        crud_account.unlink_account_from_budget(db=db, user_id=user_id, budget_id=budget_id, account_id=account_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
