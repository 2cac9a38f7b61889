"""
Main FastAPI application for ExpenseFlow.
Wires the API routers, domain error mapping and database lifecycle.
"""

import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from expenseflow.config import settings
from expenseflow.database import init_db, close_db
from expenseflow.exceptions import ExpenseFlowError
from expenseflow.schemas import CurrencyRate
from expenseflow.api import approvals, auth, companies, expenses, rules
from expenseflow.services.currency_service import currency_service

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format=settings.log_format
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting ExpenseFlow...")
    await init_db()
    logger.info("Database initialized successfully")

    yield

    logger.info("Shutting down ExpenseFlow...")
    await close_db()
    logger.info("Database connections closed")


# Create FastAPI application
app = FastAPI(
    title="ExpenseFlow",
    description="Multi-tenant expense management with rule-driven approval workflows",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Include API routers
app.include_router(auth.router)
app.include_router(companies.router)
app.include_router(expenses.router)
app.include_router(approvals.router)
app.include_router(rules.router)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/currencies", response_model=List[CurrencyRate])
async def get_currencies():
    """List the supported currencies with their rate against USD."""
    return [
        CurrencyRate(currency=code, rate=currency_service.get_exchange_rate("USD", code))
        for code in currency_service.supported_currencies()
    ]


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "ExpenseFlow"}


# Error handlers
@app.exception_handler(ExpenseFlowError)
async def expenseflow_exception_handler(request: Request, exc: ExpenseFlowError):
    """Map domain errors to their HTTP status."""
    logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "expenseflow.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
