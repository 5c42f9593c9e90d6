"""
Alembic migration environment for the PHI Vault ledger.

The ledger is SQLite only. The URL comes from the Config object when
ensure_schema() drives the upgrade, otherwise from the same resolution the
app uses (DATABASE_URL, then PHIVAULT_DB_PATH, then /tmp/phivault.db).
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from phivault.app.db.migrate import get_database_url

config = context.config

# ensure_schema() sets configure_logger=False so an in-process upgrade leaves
# the app's structlog setup alone; the CLI still gets alembic.ini logging.
if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name, disable_existing_loggers=False)


def _ledger_url() -> str:
    url = config.get_main_option("sqlalchemy.url") or get_database_url()
    if not url.startswith("sqlite"):
        raise RuntimeError(f"The ledger requires a SQLite database, got: {url.split(':', 1)[0]}")
    return url


def run_migrations_offline() -> None:
    """Emit the ledger DDL as SQL without a live connection."""
    context.configure(
        url=_ledger_url(),
        target_metadata=None,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(
        _ledger_url(),
        poolclass=pool.NullPool,
        connect_args={"check_same_thread": False},
    )

    with connectable.connect() as connection:
        # SQLite has no ALTER for most column changes; batch mode rebuilds tables.
        context.configure(connection=connection, target_metadata=None, render_as_batch=True)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
