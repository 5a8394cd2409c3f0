# clinic_billing/db/init_db.py
import logging

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from clinic_billing.db.base import Base
from clinic_billing.db.session import SessionLocal, engine
import clinic_billing.models  # noqa: F401  registers every table
from clinic_billing.models.patient import InsuranceProvider

logger = logging.getLogger(__name__)

DEFAULT_PROVIDERS = [
    ("NHIF", "NHIF"),
    ("Jubilee Insurance", "JUBILEE"),
    ("Strategis Insurance", "STRATEGIS"),
]


def create_tables(bind: Engine = engine) -> None:
    Base.metadata.create_all(bind=bind)


def seed_providers(db: Session) -> int:
    added = 0
    for name, code in DEFAULT_PROVIDERS:
        if db.query(InsuranceProvider).filter(InsuranceProvider.code == code).first():
            continue
        db.add(InsuranceProvider(name=name, code=code, is_active=True))
        added += 1
    db.commit()
    return added


def init_db() -> None:
    create_tables()
    db = SessionLocal()
    try:
        n = seed_providers(db)
        logger.info("Database initialised, %s provider(s) seeded", n)
    finally:
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
