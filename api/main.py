"""
FastAPI application initialization
"""

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from api.routes import health, campaigns, rate_limits, app_rotation, intelligence
from api.middleware import RequestContextMiddleware
from api.workers import queue_processor, intelligence_scheduler
from core.config import settings
from core.exceptions import AppException
from core.logging import setup_logging
import logging

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Ads Campaign Backend API",
    description="Facebook campaign management with rate limit dispatch and campaign intelligence",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.CORS_ORIGINS.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestContextMiddleware)

# Include routers
app.include_router(health.router)
app.include_router(campaigns.router)
app.include_router(rate_limits.router)
app.include_router(app_rotation.router)
app.include_router(intelligence.router)


@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    elif exc.status_code >= 400:
        logger.warning(f"{request.method} {request.url.path}: {exc.message}")

    content = {"success": False, "error": exc.message} if exc.status_code >= 400 else {}
    content.update({k: v for k, v in exc.response_fields().items() if v is not None})
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": message,
            "details": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors],
        },
    )


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Ads Campaign Backend API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.ENVIRONMENT != "test":
        queue_processor.start()
        intelligence_scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Ads Campaign Backend API")
    queue_processor.stop()
    intelligence_scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Ads Campaign Backend API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "campaigns": "/api/campaigns",
            "rate_limits": "/api/rate-limits",
            "app_rotation": "/api/admin/app-rotation",
            "intelligence": "/api/intelligence"
        }
    }
