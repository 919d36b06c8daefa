"""BuildBooks procurement ledger — FastAPI Application."""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from buildbooks.config import settings
from buildbooks.database import async_engine, init_models
from buildbooks.errors import BuildBooksError

logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting BuildBooks API...")

    # Verify DB connection
    try:
        async with async_engine.begin() as conn:
            await conn.exec_driver_sql("SELECT 1")
        logger.info("Database connection verified")
    except Exception as e:
        logger.error(f"Database connection failed: {e}")

    if settings.AUTO_CREATE_TABLES:
        await init_models()
        logger.info("Database tables ensured")

    logger.info("BuildBooks API started successfully")
    yield

    # Shutdown
    await async_engine.dispose()
    logger.info("BuildBooks API shut down")


app = FastAPI(
    title="BuildBooks",
    description="Construction procurement ledger — Chart of Accounts, Purchase Orders, Inventory receipts and Journal Vouchers",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BuildBooksError)
async def buildbooks_error_handler(request: Request, exc: BuildBooksError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Import and register routers
from buildbooks.routes import accounts, inventory, journal_vouchers, purchase_orders

app.include_router(accounts.router)
app.include_router(purchase_orders.router)
app.include_router(journal_vouchers.router)
app.include_router(inventory.router)


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "BuildBooks API", "version": "1.0.0"}
