import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from booking_engine.api.routes.routes import router, get_inventory_gateway
from booking_engine.infrastructure.db.models import Base
from booking_engine.infrastructure.db.session import engine


logger = logging.getLogger(__name__)

DB_CONNECT_MAX_RETRIES = int(os.getenv("DB_CONNECT_MAX_RETRIES", "30"))
DB_CONNECT_RETRY_DELAY = float(os.getenv("DB_CONNECT_RETRY_DELAY", "1.5"))


def wait_for_database(
    bind: Engine,
    max_retries: int = DB_CONNECT_MAX_RETRIES,
    retry_delay: float = DB_CONNECT_RETRY_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    Blocks until ``SELECT 1`` succeeds, so the API can start before the
    database container is ready. Returns the number of attempts used.
    """
    for attempt in range(1, max_retries + 1):
        try:
            with bind.connect() as conn:
                conn.execute(text("SELECT 1"))
        except OperationalError:
            if attempt == max_retries:
                logger.exception(
                    "Database unreachable after %s attempts; check DATABASE_URL",
                    max_retries,
                )
                raise
            logger.warning(
                "Database not ready (attempt %s/%s), next try in %.1fs",
                attempt,
                max_retries,
                retry_delay,
            )
            sleep(retry_delay)
            continue

        logger.info("Database reachable after %s attempt(s)", attempt)
        return attempt

    raise ValueError("max_retries must be at least 1")


@asynccontextmanager
async def lifespan(app: FastAPI):
    wait_for_database(engine)
    Base.metadata.create_all(bind=engine)
    yield
    if get_inventory_gateway.cache_info().currsize:
        get_inventory_gateway().close()


app = FastAPI(title="Booking Integrity Engine", lifespan=lifespan)
app.include_router(router)
