import os
import sys
from logging.config import fileConfig
from pathlib import Path

from alembic import context
from sqlalchemy import engine_from_config, pool

# Make the persona package importable when alembic runs from backend/
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def get_target_metadata():
    """Import models lazily so settings are only read when a migration runs."""
    from persona.core.database import Base
    from persona.models import register_all_models

    register_all_models()
    return Base.metadata


def sync_database_url(database_url: str) -> str:
    """Alembic runs synchronously; strip async or explicit driver suffixes."""
    for prefix in ("postgresql+asyncpg://", "postgresql+psycopg2://"):
        if database_url.startswith(prefix):
            return "postgresql://" + database_url[len(prefix) :]
    return database_url


def get_database_url() -> str:
    """Database URL from the alembic config, then settings, then the environment."""
    alembic_url = config.get_main_option("sqlalchemy.url")
    if alembic_url:
        return sync_database_url(alembic_url)

    try:
        from persona.core.config import get_settings_instance

        database_url = get_settings_instance().database_url
    except Exception:
        database_url = os.getenv("PERSONA_DATABASE_URL")
        if not database_url:
            raise RuntimeError(
                "Could not determine database URL. Set PERSONA_DATABASE_URL or configure sqlalchemy.url."
            )

    return sync_database_url(database_url)


def run_migrations_offline() -> None:
    """Emit SQL to stdout without connecting."""
    context.configure(
        url=get_database_url(),
        target_metadata=get_target_metadata(),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = get_database_url()

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=get_target_metadata())

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
