from fastapi import APIRouter, Depends, HTTPException, status, Response
from sqlalchemy.orm import Session

from budget_sync.crud import crud_connection
from budget_sync.db.core import get_db, NotFoundError
from budget_sync.models.aggregator import ConnectionCreate
from budget_sync.models.sync import ConnectionResponse, SyncResult
from budget_sync.routers.accounts import get_current_user_id
from budget_sync.services.aggregator import AggregatorClient, AggregatorError, get_aggregator
from budget_sync.services.sync_engine import SyncEngine
from budget_sync.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/connections",
    tags=["connections"],
)

@router.post("/", response_model=ConnectionResponse, status_code=status.HTTP_201_CREATED)
def create_connection(
    connection: ConnectionCreate,
    db: Session = Depends(get_db),
    aggregator: AggregatorClient = Depends(get_aggregator),
    user_id: int = Depends(get_current_user_id)
):
    """
    Exchange a link-flow public token for a stored connection.

    - **public_token**: Token returned by the aggregator's link flow.
    - **budget_id**: (Optional) Budget to link the connection's accounts to.
    """
    try:
        exchange = aggregator.exchange_public_token(connection.public_token)
        accounts = aggregator.get_accounts(exchange.access_token)
        institution_id = aggregator.get_item_institution_id(exchange.access_token)
        institution = aggregator.get_institution(institution_id) if institution_id else None
    except AggregatorError as e:
        logger.exception(f"Aggregator call failed while linking a connection for user {user_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to link the bank connection")

    try:
        return crud_connection.create_connection(
            db=db,
            user_id=user_id,
            exchange=exchange,
            accounts=accounts,
            institution=institution,
            budget_id=connection.budget_id,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

@router.get("/{connection_id}", response_model=ConnectionResponse)
def read_connection(
    connection_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    """
    Retrieve a connection with its accounts and current cursor.
    """
    db_connection = crud_connection.read_connection(db=db, connection_id=connection_id, user_id=user_id)
    if db_connection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")
    return db_connection

@router.post("/{connection_id}/sync", response_model=SyncResult)
def sync_connection(
    connection_id: int,
    db: Session = Depends(get_db),
    aggregator: AggregatorClient = Depends(get_aggregator),
    user_id: int = Depends(get_current_user_id)
):
    """
    Pull every transaction change available since the connection's last cursor.
    """
    db_connection = crud_connection.read_connection(db=db, connection_id=connection_id, user_id=user_id)
    if db_connection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Connection not found")

    result = SyncEngine(db, aggregator).sync_connection(db_connection)
    if result.error:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Failed to sync transactions")
    return result

@router.delete("/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_connection(
    connection_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(get_current_user_id)
):
    """
    Delete a connection along with its accounts and their transactions.
    """
    try:
        crud_connection.delete_connection(db=db, connection_id=connection_id, user_id=user_id)
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
