import os
from logging.config import fileConfig

from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool

from alembic import context

from postpurchase.database import normalize_database_url
from postpurchase.models import metadata

# Load .env file
load_dotenv()

# Alembic Config object
config = context.config

# DATABASE_URL first (hosting platform), then POSTGRES_URI, then local SQLite
_db_url = os.getenv("DATABASE_URL") or os.getenv("POSTGRES_URI")
database_url = normalize_database_url(_db_url if _db_url else "sqlite:///./postpurchase.db")

config.set_main_option("sqlalchemy.url", database_url.replace("%", "%%"))

# Set up logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    configuration = config.get_section(config.config_ini_section)
    if not configuration:
        raise Exception("No config section for Alembic")
    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


# Entry point
if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
