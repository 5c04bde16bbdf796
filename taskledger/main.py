"""Main FastAPI application entry point."""
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskledger.api.routes import router
from taskledger.core.config import get_settings
from taskledger.core.logging_config import LoggingMiddleware, setup_logging
from taskledger.database import Base, engine
# Import models to register them with SQLAlchemy Base
from taskledger.models.session_event import SessionEvent  # noqa: F401
from taskledger.models.task import Task  # noqa: F401
from taskledger.services.errors import CoreError, InvalidRequest

log = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    # Create database tables
    Base.metadata.create_all(bind=engine)
    log.info("startup_complete", database=engine.url.render_as_string(hide_password=True))
    yield


app = FastAPI(
    title=settings.app_name,
    description="Task tracking with a session activity ledger for audit and analytics.",
    version=settings.app_version,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(LoggingMiddleware)


@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError):
    """Every core failure leaves as {success, error, message}."""
    log.warning("request_failed", error=exc.kind, message=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.kind, "message": exc.message}
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict):
        content = {"success": False, **exc.detail}
    else:
        content = {"success": False, "error": "HTTPError", "message": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=InvalidRequest.status_code,
        content={
            "success": False,
            "error": InvalidRequest.kind,
            "message": "Request validation failed",
            "details": jsonable_encoder(exc.errors())
        }
    )


# Include API routes
app.include_router(router, prefix="/api")


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": settings.app_name}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
