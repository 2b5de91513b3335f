import logging
from contextlib import asynccontextmanager

import asyncpg
from fastapi import FastAPI

from app.api.routes import agents, ping, tickets
from app.core.config import Settings, get_settings
from app.core.logging import configure_logging, init_tracer, shutdown_tracer
from app.tickets.memory import InMemoryHelpdeskRepository
from app.tickets.models import Group
from app.tickets.postgres import PostgresHelpdeskRepository
from app.tickets.repository import HelpdeskRepository, RetryingRepository
from app.tickets.service import HelpdeskService

logger = logging.getLogger(__name__)


async def build_repository(settings: Settings) -> tuple[HelpdeskRepository, asyncpg.Pool | None]:
    """Create the configured backing store wrapped in the retry policy."""

    pool: asyncpg.Pool | None = None
    if settings.repository_backend == "postgres":
        pool = await asyncpg.create_pool(
            dsn=settings.postgres_dsn,
            min_size=settings.postgres_pool_min_size,
            max_size=settings.postgres_pool_max_size,
        )
        inner: HelpdeskRepository = PostgresHelpdeskRepository(pool)
    else:
        inner = InMemoryHelpdeskRepository()

    repository = RetryingRepository(
        inner,
        attempts=settings.retry_attempts,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
    )
    try:
        if isinstance(inner, PostgresHelpdeskRepository):
            await inner.ensure_schema()
        for raw in settings.bootstrap_groups:
            await repository.save_group(
                Group(id=raw["id"], name=raw.get("name", raw["id"]), description=raw.get("description", ""))
            )
    except Exception:
        if pool is not None:
            await pool.close()
        raise
    return repository, pool


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    app.state.logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)
    app.state.tracer_provider = tracer_provider

    pool: asyncpg.Pool | None = None
    app.state.helpdesk_service = None
    try:
        repository, pool = await build_repository(settings)
        app.state.helpdesk_service = HelpdeskService(repository)
        logger.info("Helpdesk service ready (backend=%s)", settings.repository_backend)
    except Exception:  # pragma: no cover - service initialisation best effort
        logger.exception("Helpdesk service initialisation failed")
    try:
        yield
    finally:
        if pool is not None:
            await pool.close()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(ping.router)
    app.include_router(tickets.router)
    app.include_router(agents.router)
    app.include_router(agents.groups_router)
    return app


app = create_app()
