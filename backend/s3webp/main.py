"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from s3webp.api.routes import router
from s3webp.application import Application
from s3webp.config import VERSION, configure_logging, load_settings

logger = logging.getLogger("s3webp")


def create_app(application: Application) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Converter API started")
        yield
        logger.info("Converter API shutting down")
        application.shutdown()

    app = FastAPI(
        title="S3 WebP Converter",
        description="Health and conversion history for the S3 image to WebP converter.",
        version=VERSION,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(application.settings.cors_origins) or ["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    app.state.application = application
    app.include_router(router)
    return app


def create_app_from_env() -> FastAPI:
    """Factory for ``uvicorn --factory s3webp.main:create_app_from_env``."""
    settings = load_settings()
    configure_logging(settings)
    return create_app(Application(settings))


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    uvicorn.run("s3webp.main:create_app_from_env", factory=True, host=settings.host, port=settings.port)
