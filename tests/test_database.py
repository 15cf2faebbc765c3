"""Tests for engine creation and the lightweight column migrations."""

from sqlalchemy import inspect, text

from trade_manager.database import create_db_and_tables, create_db_engine


def test_sqlite_parent_directory_created(tmp_path):
    db_file = tmp_path / "nested" / "trade_manager.db"
    engine = create_db_engine(f"sqlite:///{db_file}")
    create_db_and_tables(engine)

    assert db_file.exists()
    tables = set(inspect(engine).get_table_names())
    assert {"trade_envelope", "trade_close", "trade_reflection", "trade_price_sample", "audit_event"} <= tables
    engine.dispose()


def test_missing_columns_added_to_existing_table(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'old.db'}")
    with engine.connect() as conn:
        conn.execute(text("CREATE TABLE trade_envelope (trade_id VARCHAR PRIMARY KEY, symbol VARCHAR)"))
        conn.commit()

    create_db_and_tables(engine)

    columns = {col["name"] for col in inspect(engine).get_columns("trade_envelope")}
    assert {"preset_exit_reason", "needs_review"} <= columns
    engine.dispose()
