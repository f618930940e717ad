"""
FastAPI application initialization
"""

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from api.routes import health, sync, stats
from core.config import settings
from core.exceptions import ETLException
from core.logging import setup_logging
from ingestion.remote.client import NetSuiteClient
from ingestion.remote.credentials import ClientCredentialsFetcher, CredentialCache
import logging
from api.middleware import RequestContextMiddleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own the shared HTTP client, credential cache and NetSuite client"""
    setup_logging()
    logger.info("Starting ERP Sync Backend API")
    logger.info(f"Environment: {settings.ENVIRONMENT}, NetSuite: {settings.NETSUITE_ENV}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as http:
        credentials = CredentialCache(ClientCredentialsFetcher(http))
        app.state.netsuite = NetSuiteClient(http, credentials)
        yield

    logger.info("Shutting down ERP Sync Backend API")


# Create FastAPI app
app = FastAPI(
    title="ERP Sync Backend API",
    description="Extraction and reconciliation of NetSuite data into the portal database",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)


@app.exception_handler(ETLException)
async def etl_exception_handler(request: Request, exc: ETLException):
    """Map every sync failure to the JSON error contract"""
    return JSONResponse(
        status_code=exc.http_status,
        content=jsonable_encoder(exc.to_response()),
    )


# Include routers
app.include_router(health.router)
app.include_router(sync.router)
app.include_router(stats.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "ERP Sync Backend API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "customers": "/admin/sync/customers",
            "etas": "/admin/sync/etas",
            "payment_instruments": "/admin/sync/payment-instruments",
            "customer_identifiers": "/admin/sync/customer-identifiers",
            "invoices": "/admin/sync/invoices",
            "sales_orders": "/admin/sync/sales-orders",
            "fulfillments": "/admin/sync/fulfillments",
            "runs": "/admin/sync/runs",
        }
    }
