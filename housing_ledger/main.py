import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from housing_ledger.api.endpoints import router
from housing_ledger.core.config import settings
from housing_ledger.db.session import AsyncSessionLocal, engine
from housing_ledger.exceptions import LedgerError
from housing_ledger.models import Base
from housing_ledger.services.accounts import ChartOfAccountsService

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.AUTO_CREATE_SCHEMA:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with AsyncSessionLocal() as db:
            await ChartOfAccountsService(db).seed_default_chart()
        logger.info("Schema created and default chart seeded")
    yield
    await engine.dispose()


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    logger.warning(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "context": exc.context})


@app.get("/health")
async def health_check():
    return {"status": "healthy", "app_name": settings.PROJECT_NAME}


app.include_router(router, prefix="/api")
