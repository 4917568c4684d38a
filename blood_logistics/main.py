from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
import time
import structlog
from contextlib import asynccontextmanager

from .core.config import settings
from .core.exceptions import ServiceError
from .routers import blood_requests, blood_units, centers, health
from .models.database import init_database
from .models.schemas import ErrorResponse
from .utils.monitoring import setup_prometheus_metrics, track_request_metrics, track_api_error

logging.basicConfig(format="%(message)s", level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.LOG_FORMAT == "json" else structlog.dev.ConsoleRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Blood Logistics Service", version=settings.APP_VERSION)

    await init_database()

    if settings.ENABLE_METRICS:
        setup_prometheus_metrics()

    logger.info("Service startup completed")

    yield

    logger.info("Shutting down Blood Logistics Service")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Blood unit lifecycle, custody ledger, inventory and hospital request service",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["*"]  # Configure appropriately for production
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent")
    )

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "Request failed",
            method=request.method,
            url=str(request.url),
            error=str(e),
            process_time=time.time() - start_time
        )
        raise

    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=process_time
    )
    if settings.ENABLE_METRICS:
        track_request_metrics(request, response, process_time)

    response.headers["X-Process-Time"] = str(process_time)
    return response


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(message=message).dict()
    )


@app.exception_handler(ServiceError)
async def service_exception_handler(request: Request, exc: ServiceError):
    """Map domain errors onto the error envelope."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Service error",
        method=request.method,
        url=str(request.url),
        status_code=exc.status_code,
        error_type=type(exc).__name__,
        message=exc.message
    )
    track_api_error(request.url.path, type(exc).__name__)
    return error_response(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report malformed input as a 400 with a readable message."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path"))
        problems.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))

    logger.warning("Request validation failed", url=str(request.url), errors=problems)
    track_api_error(request.url.path, "RequestValidationError")
    return error_response(400, "; ".join(problems) or "Invalid request")


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    logger.error(
        "HTTP exception",
        method=request.method,
        url=str(request.url),
        status_code=exc.status_code,
        detail=exc.detail
    )
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions."""
    logger.error(
        "Unhandled exception",
        method=request.method,
        url=str(request.url),
        error=str(exc),
        error_type=type(exc).__name__
    )
    track_api_error(request.url.path, type(exc).__name__)
    return error_response(500, "Internal server error")


app.include_router(health.router, prefix=settings.API_V1_STR)
app.include_router(blood_units.router, prefix=settings.API_V1_STR)
app.include_router(blood_requests.router, prefix=settings.API_V1_STR)
app.include_router(centers.router, prefix=settings.API_V1_STR)


@app.get("/")
async def root():
    """Root endpoint with service information."""
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "docs": "/docs",
        "health": f"{settings.API_V1_STR}/health",
        "timestamp": time.time()
    }


@app.get(f"{settings.API_V1_STR}/info")
async def api_info():
    """API information endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "api_version": settings.API_V1_STR,
        "environment": "development" if settings.DEBUG else "production",
        "features": {
            "health_checks": True,
            "blood_units": True,
            "blood_requests": True,
            "centers": True,
            "monitoring": settings.ENABLE_METRICS
        },
        "endpoints": {
            "health": f"{settings.API_V1_STR}/health",
            "blood": f"{settings.API_V1_STR}/blood",
            "blood_requests": f"{settings.API_V1_STR}/blood-requests",
            "centers": f"{settings.API_V1_STR}/centers"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "blood_logistics.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
