import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from hemolink.config import settings
from hemolink.database import close_db, init_db
from hemolink.dependencies import get_db
from hemolink.exceptions import EngineError, UpstreamUnavailable
from hemolink.middlewares.logging_middleware import LoggingMiddleware
from hemolink.routes import api_router
from hemolink.services.scheduler import start_scheduler, stop_scheduler
from hemolink.utils.logging_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)

RUN_BACKGROUND_JOBS = settings.ENVIRONMENT.lower() != "test"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{settings.PROJECT_NAME} starting up ({settings.ENVIRONMENT})")

    # Production schema is managed by Alembic
    if settings.ENVIRONMENT.lower() != "production":
        await init_db()

    if RUN_BACKGROUND_JOBS:
        start_scheduler()

    yield

    logger.info("Application shutting down...")
    if RUN_BACKGROUND_JOBS:
        stop_scheduler()
    await close_db()


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.kind} on {request.method} {request.url.path}: {exc.detail}")
    else:
        logger.info(f"{exc.kind} on {request.method} {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "kind": exc.kind, "message": exc.detail},
        headers=exc.headers,
    )


async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(
        f"Storage error on {request.method} {request.url.path}: {type(exc).__name__}: {exc}"
    )
    return JSONResponse(
        status_code=503,
        content={
            "success": False,
            "kind": UpstreamUnavailable.kind,
            "message": "Storage is temporarily unavailable, please retry",
        },
    )


def create_application() -> FastAPI:
    """Create the FastAPI application"""
    app = FastAPI(
        title=settings.PROJECT_NAME,
        description=settings.PROJECT_DESCRIPTION,
        version=settings.VERSION,
        docs_url=settings.DOCS_URL,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=600,
    )
    app.add_middleware(LoggingMiddleware)

    app.add_exception_handler(EngineError, engine_error_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)

    app.include_router(api_router, prefix=settings.API_PREFIX)

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
            "BearerAuth": {"type": "http", "scheme": "bearer", "bearerFormat": "JWT"}
        }
        for path_key, path_item in openapi_schema["paths"].items():
            if path_key.startswith(settings.API_PREFIX):
                for method in path_item.values():
                    method.setdefault("security", []).append({"BearerAuth": []})

        app.openapi_schema = openapi_schema
        return app.openapi_schema

    app.openapi = custom_openapi

    @app.get("/health")
    async def health_check(db: AsyncSession = Depends(get_db)):
        """Health check with database connectivity test"""
        try:
            await db.execute(select(1))
        except SQLAlchemyError as e:
            logger.error(f"Health check failed: {e}")
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "database": "disconnected"},
            )
        return {
            "status": "healthy",
            "database": "connected",
            "environment": settings.ENVIRONMENT,
            "version": settings.VERSION,
        }

    return app


app = create_application()
