"""SQLite backend strategy implementation."""

from __future__ import annotations

from pathlib import Path

from fair_marketplace.db import DEFAULT_SQLITE_DB_PATH
from fair_marketplace.db.relational_backend import RelationalBackend


class SQLiteBackend(RelationalBackend):
    """Backend strategy that stores listings in a local SQLite file."""

    def __init__(self, db_path: str | Path = DEFAULT_SQLITE_DB_PATH) -> None:
        self.db_path = Path(db_path).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(
            f"sqlite:///{self.db_path}",
            echo=False,
            connect_args={"check_same_thread": False},
        )
        # A fresh file needs its tables before the first query.
        self.ensure_schema()


__all__ = ["SQLiteBackend"]
