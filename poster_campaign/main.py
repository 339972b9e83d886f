# poster_campaign/main.py

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from poster_campaign.config import settings

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("poster-main")

from poster_campaign.api.audit import router as audit_router
from poster_campaign.api.auth import router as auth_router
from poster_campaign.api.campaigns import router as campaigns_router
from poster_campaign.api.companies import router as companies_router
from poster_campaign.api.images import router as images_router
from poster_campaign.api.users import router as users_router
from poster_campaign.db import init_db
from poster_campaign.errors import AppError
from poster_campaign.services.storage import storage_service


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "%s %s -> %s (%.1fms) request=%s user=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request_id,
            getattr(request.state, "user_id", None),
        )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Poster Campaign API (%s)", settings.ENV)
    init_db()
    storage_service.ensure_directories()
    yield
    logger.info("Shutting down Poster Campaign API")


app = FastAPI(
    title="Poster Campaign API",
    description="Campaign management, contractor uploads and image approval",
    version="1.0.0",
    lifespan=lifespan,
)


def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )

    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "HTTPBearer": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
        }
    }

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi


# ======================================================
# ERROR ENVELOPE
# ======================================================

def _error_response(status_code: int, message: str, details=None) -> JSONResponse:
    error = {"message": message}
    if details is not None:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _error_response(exc.status_code, exc.message, exc.details)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg"),
        }
        for err in exc.errors()
    ]
    return _error_response(400, "Validation failed", details)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error_response(500, "Internal server error")


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.get("/health")
async def health_check():
    return {
        "success": True,
        "data": {
            "status": "healthy",
            "environment": settings.ENV,
            "timestamp": datetime.utcnow().isoformat(),
        },
    }


app.include_router(auth_router, prefix="/api")
app.include_router(users_router, prefix="/api")
app.include_router(companies_router, prefix="/api")
app.include_router(campaigns_router, prefix="/api")
app.include_router(images_router, prefix="/api")
app.include_router(audit_router, prefix="/api")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "poster_campaign.main:app",
        host="127.0.0.1",
        port=8000,
        reload=not settings.is_production,
    )
