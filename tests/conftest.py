import os
import sys

import pytest
from sqlalchemy import create_engine, text

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# Must be set before server.py is imported.
os.environ.setdefault("RATELIMIT_ENABLED", "0")

from executor import QueryExecutor  # noqa: E402


@pytest.fixture
def sqlite_engine(tmp_path):
    # Queries run on a worker thread, so the connection must be shareable.
    engine = create_engine(f"sqlite:///{tmp_path / 'querylens.db'}", connect_args={"check_same_thread": False})
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE accounts (account_name TEXT, balance REAL)"))
        conn.execute(text("INSERT INTO accounts VALUES ('Acme', 1200.5), ('Globex', 830.0), ('Initech', 410.25)"))
        conn.execute(text("CREATE TABLE payments (created_at TEXT, amount REAL, note TEXT)"))
        conn.execute(
            text(
                "INSERT INTO payments VALUES "
                "('2024-01-01', 100, NULL), ('2024-01-02', 150, 'late'), ('2024-01-03', 90, NULL)"
            )
        )
    yield engine
    engine.dispose()


@pytest.fixture
def sqlite_executor(sqlite_engine):
    return QueryExecutor(engine=sqlite_engine)
