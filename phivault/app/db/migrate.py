"""
Database migration utilities for the durable ledger backend.

Alembic is the authoritative schema manager; the SQLite ledger tables are
created by the baseline migration in alembic/versions.

DB path resolution:
  1. DATABASE_URL env var  (full SQLAlchemy URL, used by Alembic)
  2. PHIVAULT_DB_PATH env var  (SQLite file path)
  3. Default: /tmp/phivault.db
"""

import os
import sqlite3
import stat
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)


def get_db_path() -> Path:
    """
    Get the path to the SQLite ledger file.

    Returns the path from PHIVAULT_DB_PATH, or /tmp/phivault.db by default.
    """
    db_path_env = os.getenv("PHIVAULT_DB_PATH")
    if db_path_env:
        return Path(db_path_env)

    # Never inside the source tree.
    return Path("/tmp/phivault.db")


def get_database_url(db_path: Path = None) -> str:
    """Return the SQLAlchemy URL Alembic migrates."""
    if db_path is None:
        database_url = os.getenv("DATABASE_URL")
        if database_url:
            return database_url
        db_path = get_db_path()

    return f"sqlite:///{db_path}"


def ensure_db_permissions_secure(db_path: Path):
    """
    Restrict the ledger file to owner read/write (0600).

    Raises:
        PermissionError: If unable to set secure permissions
    """
    if not db_path.exists():
        return

    try:
        os.chmod(db_path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError as e:
        raise PermissionError(f"Failed to set secure permissions on database: {e}")


def enable_wal_mode(conn: sqlite3.Connection):
    """Enable Write-Ahead Logging so readers never block the committing writer."""
    conn.execute("PRAGMA journal_mode=WAL")
    conn.commit()


def ensure_schema(db_path: Path = None):
    """
    Bring the ledger schema to the latest Alembic revision.

    Runs ``alembic upgrade head`` programmatically, then applies WAL mode and
    0600 permissions. Idempotent.
    """
    if db_path is None:
        db_path = get_db_path()
    database_url = get_database_url(db_path)

    # phivault/app/db/migrate.py -> repo root is 4 levels up.
    repo_root = Path(__file__).parent.parent.parent.parent
    alembic_ini = repo_root / "alembic.ini"

    from alembic.config import Config
    from alembic import command as alembic_command

    alembic_cfg = Config(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str(repo_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    alembic_cfg.attributes["configure_logger"] = False

    alembic_command.upgrade(alembic_cfg, "head")

    conn = sqlite3.connect(db_path)
    try:
        enable_wal_mode(conn)
    finally:
        conn.close()
    ensure_db_permissions_secure(db_path)
    logger.info("ledger_schema_ready", db_path=str(db_path))


def get_connection(db_path: Path = None) -> sqlite3.Connection:
    """
    Get a SQLite connection with Row factory enabled.

    isolation_level=None leaves transaction control to the caller
    (explicit BEGIN IMMEDIATE / COMMIT in the ledger backend).
    """
    if db_path is None:
        db_path = get_db_path()
    conn = sqlite3.connect(db_path, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


def check_db_security(db_path: Path = None) -> dict:
    """
    Check database security configuration.

    Returns:
        Dictionary with security check results
    """
    if db_path is None:
        db_path = get_db_path()

    results = {
        "db_exists": db_path.exists(),
        "permissions_secure": False,
        "wal_enabled": False,
    }

    if not db_path.exists():
        return results

    mode = stat.S_IMODE(os.stat(db_path).st_mode)
    results["permissions_secure"] = (mode & (stat.S_IRGRP | stat.S_IROTH)) == 0

    conn = get_connection(db_path)
    try:
        journal_mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        results["wal_enabled"] = journal_mode.upper() == "WAL"
    finally:
        conn.close()

    return results
