from contextlib import asynccontextmanager

from fastapi import FastAPI

from .crud.crud_category import seed_built_in_categories
from .db.core import session_local
from .logging_config import setup_logging, get_logger
from .routers.accounts import router as accounts_router
from .routers.budgets import router as budgets_router
from .routers.categories import router as categories_router
from .routers.connections import router as connections_router
from .routers.imports import router as imports_router
from .routers.transactions import router as transactions_router

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    db = session_local()
    try:
        created = seed_built_in_categories(db)
        if created:
            logger.info(f"Seeded {created} built-in categories")
    finally:
        db.close()
    yield


app = FastAPI(lifespan=lifespan)


app.include_router(connections_router)
app.include_router(budgets_router)
app.include_router(accounts_router)
app.include_router(categories_router)
app.include_router(transactions_router)
app.include_router(imports_router)


@app.get("/")
def read_root():
    return "Server is running."
