# -*- coding: utf-8 -*-
"""Alembic environment for PotKeeper (async).

Назначение:
    • Настроить Alembic для работы с async SQLAlchemy (PostgreSQL/asyncpg,
      для локальных прогонов - SQLite/aiosqlite).
    • Подтянуть Declarative Base и модели истории раундов.
    • Запустить миграции в оффлайн/онлайн-режиме.

Канон/инварианты:
    • Только DDL; данные раундов не изменяются.
    • Единственный источник DSN - config_core (DATABASE_URL).

Запреты:
    • Никаких create_all/drop_all здесь - DDL описана в файлах версий.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.ext.asyncio import async_engine_from_config

from potkeeper.app.core.config_core import get_settings
from potkeeper.app.models import SCHEMA, Base

# -----------------------------------------------------------------------------
# Базовая конфигурация Alembic
# -----------------------------------------------------------------------------
config = context.config
if config.config_file_name:
    fileConfig(config.config_file_name)  # логирование Alembic

settings = get_settings()

db_url = settings.database_url_async()
config.set_main_option("sqlalchemy.url", db_url)

target_metadata = Base.metadata


# -----------------------------------------------------------------------------
# Оффлайн-режим (генерация SQL без подключения)
# -----------------------------------------------------------------------------
def run_migrations_offline() -> None:
    """Запускает миграции без подключения к БД (выводит SQL)."""

    context.configure(
        url=db_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_schemas=SCHEMA is not None,
        version_table_schema=SCHEMA,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


# -----------------------------------------------------------------------------
# Онлайн-режим (async engine)
# -----------------------------------------------------------------------------

def do_run_migrations(connection) -> None:
    """Оборачивает context.run_migrations для sync-API внутри async соединения."""

    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        compare_type=True,
        include_schemas=SCHEMA is not None,
        version_table_schema=SCHEMA,
    )
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    """Создаёт async engine и запускает миграции."""

    connectable = async_engine_from_config(
        config.get_section(config.config_ini_section) or {},
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())


# ============================================================================
# Пояснения «для чайника»:
#   • URL БД берётся из окружения (DATABASE_URL) и приводится к asyncpg.
#   • DB_SCHEMA (если задана) используется и для таблиц, и для alembic_version.
# ============================================================================
