"""SQLModel database engine creation and schema setup."""

import logging
from pathlib import Path

from sqlalchemy import Engine, inspect, text
from sqlmodel import SQLModel, create_engine

# Register every table on SQLModel.metadata
from trade_manager import models  # noqa: F401

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    # SQLite needs check_same_thread=False; PostgreSQL does not
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    if database_url.startswith("sqlite:///"):
        db_path = database_url[len("sqlite:///"):]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(database_url, echo=echo, connect_args=connect_args)


def _run_migrations(engine: Engine):
    """Lightweight schema migrations for columns added after a table was first created."""
    inspector = inspect(engine)
    if "trade_envelope" not in inspector.get_table_names():
        return

    columns = {col["name"] for col in inspector.get_columns("trade_envelope")}
    added = {
        "preset_exit_reason": "VARCHAR",
        "needs_review": "BOOLEAN NOT NULL DEFAULT FALSE",
    }
    with engine.connect() as conn:
        for name, ddl in added.items():
            if name not in columns:
                logger.info(f"Migrating: adding trade_envelope.{name}")
                conn.execute(text(f"ALTER TABLE trade_envelope ADD COLUMN {name} {ddl}"))
        conn.commit()


def create_db_and_tables(engine: Engine):
    """Create all tables. Called on startup."""
    SQLModel.metadata.create_all(engine)
    _run_migrations(engine)
