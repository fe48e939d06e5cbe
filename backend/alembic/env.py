"""Alembic environment for the group booking schema.

The URL comes from ``groupbooking.config``; ``alembic -x url=...`` points a
single run elsewhere (e.g. rendering the Postgres SQL for review). Online runs
against the configured database reuse the application engine, so SQLite gets
the same WAL and busy-timeout pragmas as the service.
"""
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool

from groupbooking import database
from groupbooking.config import settings

# Register every table with Base.metadata
from groupbooking.models.owner import Owner                          # noqa: F401
from groupbooking.models.event import Event                          # noqa: F401
from groupbooking.models.payment import Payment                      # noqa: F401
from groupbooking.models.payment_transition import PaymentTransition  # noqa: F401
from groupbooking.models.waiting_list import WaitingListEntry        # noqa: F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = database.Base.metadata
database_url = context.get_x_argument(as_dictionary=True).get("url", settings.DATABASE_URL)


def _configure(**kwargs) -> None:
    # SQLite cannot alter constraints in place; batch mode recreates the table.
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=database_url.startswith("sqlite"),
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit the migration SQL without a connection."""
    _configure(url=database_url, literal_binds=True, dialect_opts={"paramstyle": "named"})
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    if database_url == settings.DATABASE_URL:
        connectable = database.engine
    else:
        connectable = create_engine(database_url, poolclass=pool.NullPool)
    with connectable.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
