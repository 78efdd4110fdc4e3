"""Party Ledger: Main FastAPI Application.

Points, milestone popups and peer nominations for a party game.
"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import api_router
from .core import Settings, close_db, create_engine, create_session_factory, get_settings, init_db
from .schemas import ErrorResponse
from .services.notifications import channels_from_settings
from .services.realtime import ChangeFeed, PostgresChangeListener
from .services.session import PartySession
from .services.store import PartyStore

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan: build the party session, tear it down."""
        engine = create_engine(settings)
        listen_to_postgres = settings.realtime_backend == "postgres"
        await init_db(engine, install_triggers=listen_to_postgres)

        feed = ChangeFeed()
        # With triggers installed every write arrives via NOTIFY, so the
        # store only publishes locally when there is no listener.
        store = PartyStore(
            create_session_factory(engine),
            feed=None if listen_to_postgres else feed,
        )
        listener = None
        if listen_to_postgres:
            listener = PostgresChangeListener(settings.database_url, feed)
            await listener.start()

        party = PartySession(
            store,
            settings,
            channels=channels_from_settings(settings),
            feed=feed,
        )
        await party.start()
        app.state.party = party

        try:
            yield
        finally:
            await party.stop()
            if listener is not None:
                await listener.stop()
            await close_db(engine)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="""
        ## Party Ledger API

        - **Points**: ranked leaderboard and manual adjustments
        - **Milestones**: popup queue and activity history
        - **Nominations**: peer votes for a bonus point, resolved after a fixed window
        """,
        openapi_url=f"{settings.api_prefix}/openapi.json",
        docs_url=f"{settings.api_prefix}/docs",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions."""
        logger.exception(f"Unhandled exception on {request.url.path}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="internal_error",
                message=f"An unexpected error occurred: {str(exc)[:200]}",
            ).model_dump(),
        )

    @app.get("/health", tags=["health"])
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": settings.app_version}

    app.include_router(api_router, prefix=settings.api_prefix)
    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=8000,
    )
