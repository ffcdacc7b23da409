import logging
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from booking_engine.api.routes.routes import router
from booking_engine.infrastructure.db.session import engine, settings
from booking_engine.infrastructure.db.models import Base

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Event Booking Engine")
app.include_router(router)


def wait_for_database(bind: Engine, attempts: int, delay: float) -> None:
    """Blocks until `SELECT 1` succeeds, giving up after `attempts` tries."""
    for attempt in range(1, attempts + 1):
        try:
            with bind.connect() as conn:
                conn.execute(text("SELECT 1"))
        except OperationalError:
            if attempt >= attempts:
                logger.exception("Giving up on the database after %s attempts; check DATABASE_URL", attempts)
                raise
            logger.warning("Database unavailable (%s/%s), next try in %.1fs", attempt, attempts, delay)
            time.sleep(delay)
        else:
            logger.info("Connected to the database on attempt %s", attempt)
            return


@app.on_event("startup")
def on_startup() -> None:
    wait_for_database(engine, settings.db_connect_max_retries, settings.db_connect_retry_delay)
    Base.metadata.create_all(bind=engine)
    logger.info("Booking engine ready (currency %s)", settings.currency)
