# -*- coding: utf-8 -*-
# potkeeper/app/core/database_core.py
# =============================================================================
# Назначение кода:
#   • Единая точка работы с БД истории раундов (SQLAlchemy 2.0 async).
#   • Declarative Base для моделей, AsyncEngine и async_sessionmaker.
#   • Health-утилиты (db_ping) и корректное закрытие пула (dispose_engine).
#
# Канон / инварианты:
#   • Только async-движок (create_async_engine).
#   • Движок создаётся из ЯВНО переданного URL (deps.build_container).
#     Глобального «ленивого» движка нет - тесты и прод собирают свой.
#   • Сессии expire_on_commit=False, autoflush=False.
#   • БД - вспомогательный слой: её падение не останавливает раунды
#     (оркестратор логирует ошибки записи и идёт дальше).
#
# Запреты:
#   • Никакой бизнес-логики и DDL здесь - только подключения и сессии.
# =============================================================================

from __future__ import annotations

from typing import Optional

from sqlalchemy import MetaData, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from potkeeper.app.core.logging_core import get_logger

logger = get_logger(__name__)

# Единые имена constraint'ов - Alembic генерирует стабильные миграции.
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Declarative Base всех моделей PotKeeper."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


def create_engine(
    url: str,
    *,
    pool_size: Optional[int] = None,
    max_overflow: Optional[int] = None,
    echo: bool = False,
) -> AsyncEngine:
    """
    Создаёт AsyncEngine.

    • pool_pre_ping - раннее обнаружение «умерших» соединений.
    • Параметры пула передаются только для серверных БД; у SQLite
      (тесты, local) свой пул без pool_size.
    """
    kwargs: dict = {"echo": echo, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        if pool_size is not None:
            kwargs["pool_size"] = pool_size
        if max_overflow is not None:
            kwargs["max_overflow"] = max_overflow
    logger.info("Creating async DB engine", extra={"driver": url.split(":", 1)[0]})
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Фабрика сессий поверх движка.

    expire_on_commit=False - объекты остаются валидными после commit().
    """
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False,
        autoflush=False,
        class_=AsyncSession,
    )


async def db_ping(engine: AsyncEngine) -> bool:
    """
    Простейший health-check БД: SELECT 1.

    True - БД отвечает; False - нет (ошибка логируется).
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except (OperationalError, DBAPIError, OSError) as exc:
        logger.error("DB ping failed: DB is not reachable", extra={"error": str(exc)})
        return False


async def dispose_engine(engine: Optional[AsyncEngine]) -> None:
    """Закрывает пул соединений (shutdown приложения)."""
    if engine is None:
        return
    try:
        await engine.dispose()
    except Exception:  # noqa: BLE001
        logger.warning("Error during engine dispose", exc_info=True)


__all__ = [
    "Base",
    "AsyncEngine",
    "AsyncSession",
    "create_engine",
    "create_session_factory",
    "db_ping",
    "dispose_engine",
]
