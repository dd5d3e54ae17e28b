from escrow_market.models_sqlalchemy import Base, engine
from escrow_market.models_sqlalchemy import models  # noqa: F401  (registers tables)
from escrow_market.utils.logger import logger


def init_db(bind=None):
    """Create every table directly from the ORM metadata.

    Local development and tests only; Postgres deployments run
    ``alembic upgrade head`` instead.
    """
    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created successfully!")


if __name__ == "__main__":
    init_db()
