from fastapi import APIRouter, Depends, HTTPException, status, UploadFile, File, Form
from sqlalchemy.orm import Session

from budget_sync.db.core import get_db, NotFoundError
from budget_sync.models.sync import CsvImportResult
# This is a placeholder for a proper authentication dependency.
from budget_sync.routers.accounts import get_current_user_id
from budget_sync.services.csv_import import CsvImportError, import_csv
from budget_sync.services.persistence import PersistenceError
from budget_sync.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/budgets",
    tags=["imports"],
)

CSV_CONTENT_TYPES = ["text/csv", "application/vnd.ms-excel"]

@router.post("/{budget_id}/imports/csv", response_model=CsvImportResult)
async def upload_csv(
    budget_id: int,
    file: UploadFile = File(...),
    create_missing_accounts: bool = Form(False),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_db)
):
    """
    Import transactions from a CSV file into the budget.

    Rows that cannot be imported are reported back with a reason instead of
    failing the whole file.

    - **file**: CSV with the TransactionId, TransactionStatus, TransactionDate, TransactionAmount,
      TransactionMerchant, TransactionCategory, BankName, BankSymbol, AccountName, AccountType
      and AccountMask columns.
    - **create_missing_accounts**: Create manual accounts the file references but the budget does not have yet.
    """
    if file.content_type not in CSV_CONTENT_TYPES:
        raise HTTPException(status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail="Only CSV files are supported.")

    content = await file.read()
    try:
        return import_csv(db, user_id, budget_id, content, create_missing_accounts=create_missing_accounts)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (CsvImportError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PersistenceError as e:
        logger.exception(f"CSV import failed for budget {budget_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to import transactions")
