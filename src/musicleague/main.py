"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from musicleague.api.discussion import comments_router, reactions_router
from musicleague.api.invites import router as invites_router
from musicleague.api.leagues import router as leagues_router
from musicleague.api.rounds import router as rounds_router
from musicleague.api.seasons import router as seasons_router
from musicleague.api.stats import router as stats_router
from musicleague.api.submissions import router as submissions_router
from musicleague.api.votes import router as votes_router
from musicleague.auth.session import router as auth_router
from musicleague.config import Settings
from musicleague.core.errors import DomainError, Internal
from musicleague.db.engine import create_engine, create_tables

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: create engine/tables and start the deadline sweep scheduler."""
    settings: Settings = app.state.settings
    engine = create_engine(settings.database_url)
    await create_tables(engine)
    app.state.engine = engine

    scheduler = None
    effective_cron = settings.effective_sweep_cron()
    if effective_cron is not None:
        from apscheduler.schedulers.asyncio import AsyncIOScheduler
        from apscheduler.triggers.cron import CronTrigger

        from musicleague.core.scheduler_runner import sweep_round_deadlines

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            sweep_round_deadlines,
            trigger=CronTrigger.from_crontab(effective_cron),
            kwargs={
                "engine": engine,
                "empty_round_policy": settings.musicleague_empty_round_policy,
            },
            id="sweep_round_deadlines",
            name="Advance rounds past their deadlines",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        app.state.scheduler = scheduler
        logger.info(
            "scheduler_started cron=%s empty_round_policy=%s",
            effective_cron,
            settings.musicleague_empty_round_policy,
        )
    else:
        app.state.scheduler = None
        logger.info("scheduler_disabled")

    yield

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")

    await engine.dispose()


async def _domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    logger.info(
        "request_rejected path=%s code=%s message=%s", request.url.path, exc.code, exc.message
    )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


async def _database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("database_error path=%s", request.url.path)
    error = Internal("The request could not be completed")
    return JSONResponse(status_code=error.status_code, content={"error": error.to_dict()})


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the Music League FastAPI application."""
    settings = settings or Settings()

    logging.basicConfig(
        level=getattr(logging, settings.musicleague_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Music League",
        version="0.1.0",
        description="Round coordination, voting, and standings for music-sharing leagues",
        docs_url="/docs" if settings.musicleague_env != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_exception_handler(DomainError, _domain_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(SQLAlchemyError, _database_error_handler)  # type: ignore[arg-type]

    app.include_router(auth_router)

    app.include_router(leagues_router)
    app.include_router(invites_router)
    app.include_router(seasons_router)
    app.include_router(rounds_router)
    app.include_router(submissions_router)
    app.include_router(votes_router)
    app.include_router(reactions_router)
    app.include_router(comments_router)
    app.include_router(stats_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "env": settings.musicleague_env}

    return app


app = create_app()
