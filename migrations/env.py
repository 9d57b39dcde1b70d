"""Alembic environment: migrations run synchronously over psycopg2.

The URL comes from the application settings, so `alembic upgrade head` and
the API always target the same database.
"""

from logging.config import fileConfig

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool

# Exported variables win over .env, as they do for the API.
load_dotenv()

from budgetflow.config import settings  # noqa: E402
from budgetflow.database import Base  # noqa: E402
import budgetflow.models  # noqa: E402,F401

config = context.config
config.set_main_option("sqlalchemy.url", settings.sync_database_url)
if config.config_file_name:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        **kwargs,
    )


def run_migrations_offline() -> None:
    _configure(url=settings.sync_database_url, literal_binds=True)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        _configure(connection=connection)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
