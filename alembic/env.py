import asyncio
import os
import sys
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine

# Ensure the project root is on the Python path
sys.path.append(os.path.join(os.path.dirname(__file__), ".."))

from hemolink.config import settings  # noqa: E402
from hemolink.db.base import Base  # noqa: E402
import hemolink.models  # noqa: E402,F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)
target_metadata = Base.metadata

db_url = os.getenv("DATABASE_URL") or settings.DATABASE_URL

# Ensure async format for PostgreSQL
if db_url.startswith("postgresql://"):
    db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)

connect_args = {}
if db_url.startswith("postgresql+asyncpg://"):
    connect_args = {
        "server_settings": {"application_name": "hemolink_migration"},
        "command_timeout": 60,
    }


async def run_async_migrations():
    """Run migrations in 'online' mode using async engine."""
    connectable = create_async_engine(
        db_url, poolclass=pool.NullPool, connect_args=connect_args
    )

    try:
        async with connectable.connect() as connection:
            async with connection.begin():

                def do_migrations(sync_connection):
                    context.configure(
                        connection=sync_connection,
                        target_metadata=target_metadata,
                        compare_type=True,
                        render_as_batch=True,
                    )
                    context.run_migrations()

                await connection.run_sync(do_migrations)
    finally:
        await connectable.dispose()


def run_migrations_offline():
    """Run migrations in 'offline' mode."""
    offline_url = db_url.replace("+asyncpg", "").replace("+aiosqlite", "")

    context.configure(
        url=offline_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online():
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
