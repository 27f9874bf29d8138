"""FixFlow Core FastAPI application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .. import __version__
from ..config import get_settings
from ..exceptions import ErrorCode, LifecycleError
from ..schemas import failure
from .dependencies import shutdown_dispatcher
from .routers import notifications, requests, technicians

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("fixflow-core")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.site_name} API")
    yield
    shutdown_dispatcher()


# Create FastAPI app
app = FastAPI(
    title="FixFlow Core API",
    description="Maintenance request lifecycle engine",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(requests.router, prefix="/api/v1")
app.include_router(technicians.router, prefix="/api/v1")
app.include_router(notifications.router, prefix="/api/v1")


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.public_code.value}: {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content=failure(exc.public_code.value, exc.message),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    details = "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content=failure(ErrorCode.VALIDATION_ERROR.value, details or "Invalid request"),
    )


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=failure(ErrorCode.SERVER_ERROR.value, "A database error occurred. Please retry."),
    )


@app.get("/")
def root():
    """Root endpoint with server info."""
    return {
        "name": "FixFlow Core API",
        "version": __version__,
        "site": settings.site_name,
        "docs": "/docs",
        "description": "Maintenance request lifecycle engine",
    }


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
