import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from loguru import logger

from rafflehub.api import auth, raffle
from rafflehub.config import settings
from rafflehub.context import AppContext, build_context
from rafflehub.database.init_db import check_db_health, init_database
from rafflehub.database.session import engine


def configure_logging():
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=settings.LOG_LEVEL,
    )
    logger.add(
        f"{settings.LOG_DIR}/rafflehub_{{time:YYYY-MM-DD}}.log",
        rotation="00:00",
        retention="30 days",
        level=settings.LOG_LEVEL,
    )


def create_app(context: Optional[AppContext] = None, prepare_database: bool = True) -> FastAPI:
    """
    Build the API application

    Args:
        context: Services to use, built from settings when omitted
        prepare_database: Create missing tables on startup
    """
    context = context or build_context()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("RaffleHub API starting...")
        logger.info(f"Version: {settings.API_VERSION}, debug mode: {settings.DEBUG}")

        if prepare_database:
            if await check_db_health(engine):
                logger.info("Database is already initialized and healthy")
            else:
                logger.info("Database needs initialization...")
                await init_database(engine)

        await context.start()
        logger.success("RaffleHub API started successfully!")
        yield

        logger.info("RaffleHub API shutting down...")
        await context.stop()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="RaffleHub API",
        version=settings.API_VERSION,
        debug=settings.DEBUG,
        lifespan=lifespan,
    )
    app.state.context = context

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API routers
    app.include_router(auth.router, prefix="/api")
    app.include_router(raffle.router, prefix="/api")

    # Uploaded cover images
    if settings.MEDIA_BASE_URL.startswith("/"):
        app.mount(
            settings.MEDIA_BASE_URL,
            StaticFiles(directory=settings.MEDIA_ROOT, check_dir=False),
            name="media",
        )

    @app.get("/api/health")
    async def health():
        """Health check endpoint"""
        return {
            "status": "ok",
            "version": settings.API_VERSION,
            "live_subscribers": context.store.feed.subscriber_count,
        }

    return app


def main():
    """Run the API server"""
    configure_logging()
    logger.info("Starting RaffleHub...")
    uvicorn.run(create_app(), host="0.0.0.0", port=8000, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    try:
        main()
    except (KeyboardInterrupt, SystemExit):
        logger.info("RaffleHub stopped by user")
