# hims_billing/db/init_db.py
import logging

from sqlalchemy.engine import Engine

from hims_billing.db.base import Base
from hims_billing.db.session import engine as default_engine

logger = logging.getLogger(__name__)


def init_db(engine: Engine = None) -> None:
    """Create every billing table that does not exist yet."""
    eng = engine or default_engine
    Base.metadata.create_all(bind=eng)
    logger.info("Billing tables ready on %s", eng.url.render_as_string(hide_password=True))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
