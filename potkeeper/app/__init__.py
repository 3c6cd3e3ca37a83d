# ==============================================================================
# PotKeeper - FastAPI application factory
# ------------------------------------------------------------------------------
# Назначение: создаёт FastAPI-приложение вокруг уже собранного контейнера,
# подключает обработчики ошибок и операционные роутеры, управляет жизненным
# циклом планировщика.
#
# Канон/инварианты:
#   • Контейнер передаётся явно (create_app(container)); фабрика ничего не
#     строит сама и не читает окружение.
#   • Lifespan: старт → планировщик + уведомление startup; стоп → планировщик
#     останавливается первым, затем shutdown-уведомление, дренаж отложенных
#     уведомлений и закрытие пула БД.
#
# Запреты:
#   • Нет пользовательских ручек ставок.
#   • Фабрика не вызывает леджер и маяк: это делает deps.startup_checks().
# ==============================================================================
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from .core.database_core import dispose_engine
from .core.errors_core import setup_exception_handlers
from .core.logging_core import get_logger
from .deps import Container
from .routes import status_routes
from .services import notifications_service as events

logger = get_logger(__name__)


def create_app(container: Container) -> FastAPI:
    """Создать FastAPI-приложение поверх контейнера зависимостей."""

    settings = container.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await container.scheduler.start()
        container.notifier.dispatch(
            events.STARTUP,
            {
                "env": settings.env_normalized,
                "version": settings.APP_VERSION,
                "beacon": container.beacon.current_endpoint,
                "checkIntervalSec": settings.GAME_CHECK_INTERVAL_SEC,
            },
        )
        logger.info("PotKeeper started")
        try:
            yield
        finally:
            await container.scheduler.stop()
            await container.notifier.notify(
                events.SHUTDOWN,
                {"uptimeSec": container.orchestrator.stats.uptime_seconds()},
            )
            await container.notifier.drain()
            await dispose_engine(container.engine)
            logger.info("PotKeeper stopped")

    app = FastAPI(title=settings.PROJECT_NAME, version=settings.APP_VERSION, lifespan=lifespan)
    app.state.container = container
    setup_exception_handlers(app)
    app.include_router(status_routes.router)

    logger.info("FastAPI app initialised")
    return app


__all__ = ["create_app"]

# ==============================================================================
# Пояснения «для чайника»:
#   • Этот модуль ничего не пишет в БД и не трогает леджер - только собирает API
#     и запускает/останавливает фоновый планировщик.
#   • Тики оркестратора идут из планировщика, а не из HTTP-запросов.
# ==============================================================================
