"""
Ledgerline - FastAPI Application Entry Point

This is the main entry point for the FastAPI application.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ledgerline import __version__
from ledgerline.config import settings
from ledgerline.database import init_db, close_db
from ledgerline.routers import audit, bank_reconciliation, fiscal_periods, ledger, three_way_matching
from ledgerline.utils.error_handling import setup_exception_handlers

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info(f"Starting {settings.app_name}...")
    logger.info(f"Environment: {settings.app_env}")

    # Initialize database (dev only - use migrations in production)
    if settings.is_development:
        await init_db()
        logger.info("Database tables initialized")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name}...")
    await close_db()
    logger.info("Database connections closed")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    description="Double-entry posting, fiscal period control, three-way matching and bank reconciliation",
    version=__version__,
    docs_url="/api/docs" if settings.is_development else None,
    redoc_url="/api/redoc" if settings.is_development else None,
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Standardized error responses
setup_exception_handlers(app)


# ===========================================
# API ROUTES
# ===========================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": __version__,
    }


@app.get("/api/v1")
async def api_root():
    """API v1 root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.api_version,
        "environment": settings.app_env,
    }


app.include_router(ledger.router, prefix="/api/v1/ledger", tags=["Ledger"])
app.include_router(fiscal_periods.router, prefix="/api/v1/fiscal-periods", tags=["Fiscal Periods"])
app.include_router(three_way_matching.router, prefix="/api/v1/three-way-matches", tags=["Three-Way Matching"])
app.include_router(bank_reconciliation.router, prefix="/api/v1/bank-reconciliation", tags=["Bank Reconciliation"])
app.include_router(audit.router, prefix="/api/v1/audit-logs", tags=["Audit Trail"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
