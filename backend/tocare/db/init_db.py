import logging

from tocare.config import SEED_PROTOCOLS
from tocare.db.base import Base
from tocare.db import models  # noqa: F401  registers the tables on Base.metadata
from tocare.db.seed import seed_protocols
from tocare.db.session import SessionLocal, engine

logger = logging.getLogger(__name__)


def init_db(seed: bool | None = None):
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created successfully.")

    if seed if seed is not None else SEED_PROTOCOLS:
        db = SessionLocal()
        try:
            seed_protocols(db)
        finally:
            db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
