"""
ReWear Exchange API Server

Application setup: logging, CORS, error handling and router registration.
Business rules live in the services package.
"""

from fastapi import FastAPI, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import os
from datetime import datetime, timezone

from error_handling import global_exception_handler, ReWearError
from routes import user, items, swaps, rewards, admin
from database import LEDGER_BACKEND, LedgerStore, get_ledger_store

# Configure logging
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler('app.log') if os.getenv("ENVIRONMENT") == "production" else logging.NullHandler()
    ]
)
logger = logging.getLogger(__name__)

# Environment configuration
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
PORT = int(os.getenv("PORT", 8080))
DEBUG = ENVIRONMENT == "development"
API_VERSION = "1.0.0"

DEFAULT_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:5174",
    "http://localhost:3000",
]
CORS_ORIGINS = [
    origin.strip() for origin in os.getenv("CORS_ORIGINS", "").split(",") if origin.strip()
] or DEFAULT_CORS_ORIGINS

# Create FastAPI application
app = FastAPI(
    title="ReWear Exchange API",
    version=API_VERSION,
    description="Community clothing exchange: swaps and points redemption",
    docs_url="/docs" if DEBUG else None,
    redoc_url="/redoc" if DEBUG else None
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Domain errors map to status codes; anything else falls through to the default 500
app.add_exception_handler(ReWearError, global_exception_handler)

# Include routers
app.include_router(user.router)
app.include_router(items.router)
app.include_router(swaps.router)
app.include_router(rewards.router)
app.include_router(admin.router)


@app.get("/")
async def read_root():
    """Root endpoint with API information"""
    return {
        "message": "ReWear Exchange API",
        "version": API_VERSION,
        "status": "running",
        "environment": ENVIRONMENT,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/health")
async def health_check(store: LedgerStore = Depends(get_ledger_store)):
    """Health check including a round trip to the ledger store"""
    try:
        store.ping()
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "error": str(e)
            }
        )

    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": ENVIRONMENT,
        "version": API_VERSION,
        "services": {
            "database": "connected",
            "backend": store.backend,
        },
    }


@app.on_event("startup")
async def startup_event():
    """Application startup tasks"""
    logger.info(f"=== STARTING REWEAR EXCHANGE API v{API_VERSION} ===")
    logger.info(f"Environment: {ENVIRONMENT}")
    logger.info(f"Port: {PORT}")
    logger.info(f"Debug mode: {DEBUG}")
    logger.info(f"Ledger backend: {LEDGER_BACKEND}")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("=== SHUTTING DOWN REWEAR EXCHANGE API ===")


# Middleware for request logging (development only)
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log requests in development mode"""
    if DEBUG:
        start_time = datetime.now()
        logger.info(f"Request: {request.method} {request.url}")

        response = await call_next(request)

        process_time = datetime.now() - start_time
        logger.info(f"Response: {response.status_code} in {process_time.total_seconds():.3f}s")

        return response
    else:
        return await call_next(request)


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting server in {ENVIRONMENT} mode on port {PORT}")

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=PORT,
        reload=DEBUG,
        log_level=log_level.lower(),
        access_log=DEBUG
    )
