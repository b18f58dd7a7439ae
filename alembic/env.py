import asyncio
import os
from logging.config import fileConfig

from sqlalchemy import engine_from_config
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import AsyncEngine

from alembic import context

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

from course_payments.database import Base
from course_payments import models  # noqa: F401

target_metadata = Base.metadata

# Tables owned by the catalog and identity services
EXTERNAL_TABLES = {"courses", "profiles"}


def include_object(obj, name, type_, reflected, compare_to):
    if type_ == "table" and name in EXTERNAL_TABLES:
        return False
    return True


def get_database_url():
    """Get database URL from environment or alembic.ini"""
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        return database_url

    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url

    raise ValueError(
        "No DATABASE_URL environment variable or sqlalchemy.url in alembic.ini"
    )


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    context.configure(
        url=get_database_url(),
        target_metadata=target_metadata,
        include_object=include_object,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection):
    context.configure(connection=connection, target_metadata=target_metadata, include_object=include_object)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = get_database_url()

    connectable = AsyncEngine(
        engine_from_config(
            configuration,
            prefix="sqlalchemy.",
            poolclass=pool.NullPool,
            future=True,
        )
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
