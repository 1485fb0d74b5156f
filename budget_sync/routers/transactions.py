from fastapi import APIRouter, HTTPException, status
from typing import List, Optional
from datetime import date
from fastapi.params import Depends
from sqlalchemy.orm import Session
from budget_sync.db.core import NotFoundError, get_db
from budget_sync.crud.crud_budget import read_budget
from budget_sync.crud.crud_transaction import create_manual_transaction, read_budget_transactions
from budget_sync.models.transaction import ManualTransactionCreate, TransactionResponse
from budget_sync.routers.accounts import get_current_user_id

router = APIRouter(
    prefix="/budgets",
    tags=["transactions"],
)

@router.post("/{budget_id}/transactions", status_code=status.HTTP_201_CREATED)
def create_transaction(budget_id: int, transaction: ManualTransactionCreate, db: Session = Depends(get_db),
                       user_id: int = Depends(get_current_user_id)) -> TransactionResponse:
    try:
        db_transaction = create_manual_transaction(db, user_id, budget_id, transaction)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return TransactionResponse.model_validate(db_transaction)

@router.get("/{budget_id}/transactions")
def read_transactions(budget_id: int, date_from: Optional[date] = None, date_to: Optional[date] = None,
                      skip: int = 0, limit: int = 100, db: Session = Depends(get_db),
                      user_id: int = Depends(get_current_user_id)) -> List[TransactionResponse]:
    if read_budget(db, budget_id, user_id) is None:
        raise HTTPException(status_code=404, detail="Budget not found")
    transactions = read_budget_transactions(db, budget_id, date_from=date_from, date_to=date_to, skip=skip, limit=limit)
    return [TransactionResponse.model_validate(t) for t in transactions]
