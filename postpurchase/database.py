import logging

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

log = logging.getLogger(__name__)


def normalize_database_url(connection_url: str) -> str:
    """Rewrite a configured database URL into one SQLAlchemy can use.

    Supabase hands out ``postgres://`` URLs pointing at the session pooler;
    those are switched to psycopg2, transaction mode (port 6543) and SSL.
    Non-Postgres URLs (SQLite for local runs) are returned untouched.
    """
    if connection_url.startswith("postgres://"):
        connection_url = connection_url.replace("postgres://", "postgresql+psycopg2://", 1)
    elif connection_url.startswith("postgresql://"):
        connection_url = connection_url.replace("postgresql://", "postgresql+psycopg2://", 1)
    elif "postgresql+psycopg:" in connection_url:
        connection_url = connection_url.replace("postgresql+psycopg:", "postgresql+psycopg2:")

    # Session mode (port 5432) has very low connection limits, use transaction mode
    if "supabase.com" in connection_url and ":5432" in connection_url:
        log.warning("[Database] Supabase Session Mode detected (port 5432) - switching to Transaction Mode (port 6543)")
        connection_url = connection_url.replace(":5432", ":6543")

    if "supabase.com" in connection_url and "sslmode=" not in connection_url:
        separator = "&" if "?" in connection_url else "?"
        connection_url = f"{connection_url}{separator}sslmode=require"

    return connection_url


def create_db_engine(connection_url: str) -> Engine:
    """Create the process-wide engine. Called once from create_app."""
    connection_url = normalize_database_url(connection_url)

    if connection_url.startswith("sqlite"):
        return create_engine(connection_url)

    # Small pool: each serverless instance only ever runs one batch at a time
    engine = create_engine(
        connection_url,
        pool_pre_ping=True,
        pool_size=3,
        max_overflow=7,
        pool_recycle=300,
        echo=False,
    )
    log.info("[Database] SQLAlchemy engine created with pool_size=3, max_overflow=7")
    return engine
