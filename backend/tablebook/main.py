import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

from fastapi import FastAPI, Request, Response
from sqlalchemy.exc import SQLAlchemyError

from .config import get_settings
from .database import create_schema
from .deps import event_publisher, reservation_repo_scope
from .routers import config, reservations, tables
from .usecases.sweeper import LifecycleSweeper
from .utils.request_id import REQUEST_ID_HEADER, generate_request_id, set_request_id

settings = get_settings()
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    try:
        await create_schema()
    except SQLAlchemyError as exc:
        logger.error("failed to create database schema: %s", exc)

    sweeper = LifecycleSweeper(
        reservation_repo_scope,
        event_publisher,
        interval_seconds=settings.sweep_interval_seconds,
    )
    if settings.sweeper_enabled:
        sweeper.start()
    app.state.sweeper = sweeper
    yield
    await sweeper.stop()
    logger.info("application shutting down")


async def request_id_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    request_id = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
    set_request_id(request_id)
    try:
        response = await call_next(request)
    finally:
        set_request_id(None)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


app = FastAPI(title="Table Reservation API", lifespan=lifespan)
app.middleware("http")(request_id_middleware)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(tables.router)
app.include_router(reservations.router)
app.include_router(config.router)
