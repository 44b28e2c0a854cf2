"""
APIForge - Multi-tenant API factory
Main FastAPI Application
"""
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
from loguru import logger
import sys

from apiforge.core.config import settings
from apiforge.core.container import ServiceContainer, build_container
from apiforge.core.exceptions import ApiFactoryError
from apiforge.core.initializer import AppInitializer
from apiforge.core.request_logger import RequestLoggerMiddleware
from apiforge.api.v1.api import api_router

# Configure Loguru
logger.remove()
logger.add(
    sys.stdout,
    level=settings.LOG_LEVEL,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> - <level>{message}</level>"
)

if settings.DEBUG:
    logger.add("logs/apiforge_{time}.log", rotation="500 MB", retention="7 days")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle manager"""
    container: ServiceContainer = app.state.container
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    try:
        # Initialize database pool
        await container.db.init_pool()

        # Registry and audit tables; warns when the SQL executor is missing
        initializer = AppInitializer(container.db, container.settings)
        await initializer.check_dependencies()
        await initializer.initialize_database()

        # Rebuild routers for every persisted API
        await container.registry.load_all()

        logger.info(f"{settings.APP_NAME} started successfully!")

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise

    finally:
        logger.info("Shutting down application...")
        await container.shutdown()
        logger.info("Application shut down complete")


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the application around a service container

    Args:
        container: Pre-built services; the real ones are wired when omitted
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description=settings.APP_DESCRIPTION,
        lifespan=lifespan
    )
    app.state.container = container or build_container(settings)

    # Request logger runs inside CORS so preflight answers are not audited
    app.add_middleware(RequestLoggerMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=settings.CORS_ALLOW_METHODS,
        allow_headers=settings.CORS_ALLOW_HEADERS,
    )

    # Include routers
    app.include_router(api_router)

    @app.exception_handler(ApiFactoryError)
    async def api_factory_exception_handler(request: Request, exc: ApiFactoryError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error": "Missing or invalid request fields",
                "code": "VALIDATION_ERROR",
                "details": jsonable_encoder(exc.errors()),
            }
        )

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.opt(exception=exc).error(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error occurred", "code": "INTERNAL_ERROR"}
        )

    @app.get("/")
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running",
            "docs": "/docs",
            "health": "/health"
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "apiforge.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
