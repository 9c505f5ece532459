from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
import logging

# Import database components
from app.database.database import engine, Base

# Import middleware
from app.common.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from app.common.exceptions import DomainError, domain_error_handler

# Import routers
from app.modules.cash.router import cash_registers_router, cash_sessions_router
from app.modules.settlements.router import settlements_router
from app.modules.audit.router import audit_router

# Import models for table creation
import app.modules.cash.models
import app.modules.payments.models
import app.modules.settlements.models
import app.modules.audit.models

from app.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Caja & Conciliación API",
    description="Sesiones de caja con arqueo y conciliación de liquidaciones de pasarelas de pago",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# Domain errors -> {"error", "entity", "entity_id", "detail"}
app.add_exception_handler(DomainError, domain_error_handler)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Add your frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(cash_registers_router, prefix="/api/v1")
app.include_router(cash_sessions_router, prefix="/api/v1")
app.include_router(settlements_router, prefix="/api/v1")
app.include_router(audit_router, prefix="/api/v1")

# Create database tables (only for development and tests - use migrations in production)
if settings.ENVIRONMENT in ("development", "test"):
    Base.metadata.create_all(bind=engine)


@app.get("/")
async def read_root():
    return {
        "message": "Caja & Conciliación API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}


@app.on_event("startup")
async def startup_event():
    logger.info("Caja & Conciliación API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Caja & Conciliación API shutting down...")
