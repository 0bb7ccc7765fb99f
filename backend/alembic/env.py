"""Alembic environment for the media lifecycle schema."""

from __future__ import annotations

import asyncio
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection, make_url
from sqlalchemy.ext.asyncio import async_engine_from_config

from mediaflow.core.config import settings
from mediaflow.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    override = os.getenv("ALEMBIC_DATABASE_URL")
    if override:
        return override
    url = config.get_main_option("sqlalchemy.url")
    if url:
        return url
    return settings.database_url


def _should_render_as_batch(url: str) -> bool:
    try:
        backend = make_url(url).get_backend_name()
    except Exception:
        backend = "sqlite" if url.startswith("sqlite") else ""
    return backend == "sqlite"


def run_migrations_offline() -> None:
    url = _database_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=_should_render_as_batch(url),
    )

    with context.begin_transaction():
        context.run_migrations()


def _run_with_connection(connection: Connection, url: str) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=_should_render_as_batch(url),
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    """The application URL is async (asyncpg/aiosqlite), so migrations run through run_sync."""
    url = _database_url()
    configuration = config.get_section(config.config_ini_section) or {}
    configuration["sqlalchemy.url"] = url
    connectable = async_engine_from_config(configuration, prefix="sqlalchemy.", poolclass=pool.NullPool, future=True)
    try:
        async with connectable.connect() as connection:
            await connection.run_sync(_run_with_connection, url)
    finally:
        await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
