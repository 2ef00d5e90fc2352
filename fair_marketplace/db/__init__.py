"""Helpers for working with the bundled SQLite listing store."""

from __future__ import annotations

from pathlib import Path
from typing import Final

__all__ = ["DEFAULT_SQLITE_DB_PATH"]

# Resolve next to this package so the default store location does not depend
# on the working directory.
DEFAULT_SQLITE_DB_PATH: Final[Path] = Path(__file__).resolve().with_name("marketplace.db")
