from __future__ import annotations

from sqlalchemy import Engine, text

from habitdata.db.migrations import apply_migrations
from habitdata.db.models import Base
from habitdata.db.session import get_engine


def initialize_database(engine: Engine | None = None) -> Engine:
    engine = engine or get_engine()
    Base.metadata.create_all(bind=engine)
    apply_migrations(engine)

    if engine.url.drivername.startswith("sqlite"):
        with engine.connect() as conn:
            conn.execute(text("PRAGMA optimize;"))
            conn.commit()
    return engine
