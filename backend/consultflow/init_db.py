import logging

from consultflow.database import Base, engine
import consultflow.models  # noqa: F401  registers every table on Base.metadata

logger = logging.getLogger(__name__)


def init_db() -> None:
    """Create any missing tables."""
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
