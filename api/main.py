"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from api.routes import health, syncs
from core.config import settings
from core.exceptions import SyncError, ValidationError
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from pipeline.dispatcher import create_dispatcher
from schemas.api import ErrorResponse

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Warehouse Sync API",
    description="Submit and monitor table syncs from internal ClickHouse warehouses to customer destinations",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(syncs.router)


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    """Map pipeline errors to HTTP: invalid payloads 422, transient 503, else 400"""
    if isinstance(exc, ValidationError):
        status_code = 422
    elif exc.retryable:
        status_code = 503
    else:
        status_code = 400

    request_id = getattr(request.state, "request_id", None)
    logger.warning(
        f"[{request_id}] {request.method} {request.url.path} rejected: {exc.user_message()}",
        extra={"error_context": exc.to_dict()}
    )
    body = ErrorResponse(error_kind=exc.error_kind, message=exc.message, request_id=request_id)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    setup_logging()
    logger.info("Starting Warehouse Sync API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")
    if not settings.ENCRYPTION_KEY:
        logger.warning("ENCRYPTION_KEY is not set; encrypted credential tokens will be rejected")

    # Start dispatcher
    app.state.dispatcher = create_dispatcher()
    app.state.dispatcher.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Warehouse Sync API")
    dispatcher = getattr(app.state, "dispatcher", None)
    if dispatcher is not None:
        dispatcher.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Warehouse Sync API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "syncs": "/syncs",
            "status": "/syncs/{run_id}",
            "cancel": "/syncs/{run_id}/cancel"
        }
    }
