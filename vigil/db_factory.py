"""
Database Factory Module

Selects between SQLite (default) and PostgreSQL based on environment
configuration. Both backends expose the same synchronous method set.

Environment Variables:
    USE_POSTGRES: Set to "true" to use PostgreSQL instead of SQLite
    DATABASE_URL: PostgreSQL connection string (required if USE_POSTGRES=true)
    SQLITE_DB_PATH: SQLite database file (default ./vigil.db)
"""

import logging
import os
import threading
from typing import Optional, Union

from db import DatabaseManager, StorageError


# Configuration
USE_POSTGRES = os.getenv("USE_POSTGRES", "false").lower() == "true"

logger = logging.getLogger("vigil.db")

Database = Union[DatabaseManager, "PostgresDatabaseManager"]

__all__ = ["Database", "StorageError", "USE_POSTGRES", "create_database", "get_database"]


def create_database(use_postgres: bool = USE_POSTGRES) -> Database:
    """Build a backend. PostgreSQL is only imported when selected."""
    if use_postgres:
        from db_postgres import PostgresDatabaseManager
        db = PostgresDatabaseManager()
        db.initialize()
        logger.info("Using PostgreSQL database backend")
        return db

    logger.info("Using SQLite database backend")
    return DatabaseManager()


# Singleton instance
_database: Optional[Database] = None
_database_lock = threading.Lock()


def get_database() -> Database:
    """Get or create the database singleton"""
    global _database
    if _database is None:
        with _database_lock:
            if _database is None:
                _database = create_database()
    return _database

