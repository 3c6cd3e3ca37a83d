# -*- coding: utf-8 -*-
# potkeeper/app/deps.py
# =============================================================================
# PotKeeper - сборка зависимостей процесса (composition root).
# -----------------------------------------------------------------------------
# Канон/требования:
#   • Каждый компонент создаётся ровно один раз в build_container() и получает
#     ссылки на соседей через конструктор. Никаких модульных синглтонов.
#   • Транспорты httpx можно подменить (тесты: httpx.MockTransport).
#   • startup_checks() - единственное место, где недоступность маяка/леджера
#     останавливает процесс (StartupError). Дальше сбои только логируются.
#
# Этот модуль НЕ делает бизнес-логику, только инфраструктуру/проводку.
# =============================================================================
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from potkeeper.app.core.config_core import Settings
from potkeeper.app.core.database_core import (
    create_engine,
    create_session_factory,
    db_ping,
)
from potkeeper.app.core.errors_core import PotError, StartupError
from potkeeper.app.core.logging_core import get_logger
from potkeeper.app.core.system_locks import validate_startup_config
from potkeeper.app.integrations.beacon_api import BeaconClient
from potkeeper.app.integrations.ledger_api import HttpLedgerGateway, LedgerGateway
from potkeeper.app.services.monitoring_service import BalanceMonitor, ProofAuditor, Reporter
from potkeeper.app.services.notifications_service import NotificationService
from potkeeper.app.services.round_orchestrator import RoundOrchestrator
from potkeeper.app.services.rounds_store_service import SqlRoundStore
from potkeeper.app.services.scheduler_service import SchedulerService

logger = get_logger(__name__)


@dataclass
class Container:
    """Все долгоживущие компоненты процесса."""

    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    store: SqlRoundStore
    beacon: BeaconClient
    ledger: LedgerGateway
    notifier: NotificationService
    orchestrator: RoundOrchestrator
    balance_monitor: BalanceMonitor
    reporter: Reporter
    auditor: ProofAuditor
    scheduler: SchedulerService


def build_container(
    settings: Settings,
    *,
    beacon_transport: Optional[httpx.AsyncBaseTransport] = None,
    ledger_transport: Optional[httpx.AsyncBaseTransport] = None,
    telegram_transport: Optional[httpx.AsyncBaseTransport] = None,
    ledger: Optional[LedgerGateway] = None,
) -> Container:
    """
    Создаёт и связывает компоненты.

    ledger - готовая реализация LedgerGateway (по умолчанию HTTP-релей
    по LEDGER_API_URL).
    """
    engine = create_engine(
        settings.database_url_async(),
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        echo=settings.DEBUG,
    )
    session_factory = create_session_factory(engine)
    store = SqlRoundStore(session_factory)

    beacon = BeaconClient(
        settings.beacon_endpoints,
        future_blocks=settings.BEACON_FUTURE_BLOCKS,
        poll_interval=settings.BEACON_POLL_INTERVAL_MS / 1000.0,
        wait_timeout=settings.BEACON_WAIT_TIMEOUT_SEC,
        request_timeout=settings.BEACON_REQUEST_TIMEOUT_SEC,
        transport=beacon_transport,
    )

    if ledger is None:
        ledger = HttpLedgerGateway(
            settings.LEDGER_API_URL or "",
            api_key=settings.LEDGER_API_KEY,
            timeout_seconds=settings.LEDGER_REQUEST_TIMEOUT_SEC,
            transport=ledger_transport,
        )

    notifier = NotificationService(
        bot_token=settings.TELEGRAM_BOT_TOKEN,
        chat_id=settings.ADMIN_NOTIFICATIONS_CHAT_ID,
        error_cooldown=settings.NOTIFY_ERROR_COOLDOWN_SEC,
        balance_cooldown=settings.NOTIFY_BALANCE_COOLDOWN_SEC,
        transport=telegram_transport,
    )

    orchestrator = RoundOrchestrator(
        ledger,
        beacon,
        store,
        notifier=notifier,
        timer_duration=settings.GAME_TIMER_DURATION_SEC,
        progress_thresholds=settings.progress_thresholds,
        future_blocks=settings.BEACON_FUTURE_BLOCKS,
        beacon_timeout=settings.BEACON_WAIT_TIMEOUT_SEC,
        max_consecutive_errors=settings.MAX_CONSECUTIVE_ERRORS,
    )

    balance_monitor = BalanceMonitor(
        ledger,
        notifier,
        warn_threshold=Decimal(settings.LOW_BALANCE_THRESHOLD),
        critical_floor=Decimal(settings.MIN_OPERATOR_BALANCE),
    )
    reporter = Reporter(orchestrator.stats, notifier, balance_monitor)
    auditor = ProofAuditor(store, beacon)

    scheduler = SchedulerService(interval=settings.GAME_CHECK_INTERVAL_SEC)
    scheduler.register_defaults(
        round_tick=orchestrator.tick,
        balance_check=balance_monitor.run_once,
        health_report=reporter.health_report,
        stats_report=reporter.stats_report,
        balance_every=settings.BALANCE_CHECK_INTERVAL_SEC,
        health_every=settings.HEALTH_REPORT_INTERVAL_SEC,
        stats_every=settings.STATS_REPORT_INTERVAL_SEC,
    )

    logger.info("Container built", extra={"settings": settings.debug_dump()})
    return Container(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        store=store,
        beacon=beacon,
        ledger=ledger,
        notifier=notifier,
        orchestrator=orchestrator,
        balance_monitor=balance_monitor,
        reporter=reporter,
        auditor=auditor,
        scheduler=scheduler,
    )


async def startup_checks(container: Container) -> None:
    """
    Проверки перед запуском планировщика.

    • конфигурация (обязательные ключи);
    • маяк отвечает на get_info;
    • леджер отдаёт состояние раунда.
    Недоступная БД - только предупреждение: история пишется best-effort.

    Raises:
        ConfigError: нет обязательных ключей.
        StartupError: маяк или леджер недоступны.
    """
    validate_startup_config(container.settings)

    try:
        info = await container.beacon.chain_info()
    except PotError as exc:
        raise StartupError(
            "Beacon is unreachable at startup",
            details={"endpoint": container.beacon.current_endpoint, "error": exc.message},
        ) from exc
    logger.info(
        "Beacon reachable",
        extra={"endpoint": container.beacon.current_endpoint, "finality": info.finality_pointer},
    )

    try:
        state = await container.ledger.read_state()
    except PotError as exc:
        raise StartupError(
            "Ledger is unreachable at startup",
            details={"error": exc.message},
        ) from exc
    logger.info(
        "Ledger reachable",
        extra={"round_id": state.round_id, "phase": state.phase},
    )

    if not await db_ping(container.engine):
        logger.warning("Round history database is unreachable; history writes will be retried per round")
    # Соединения пула привязаны к циклу событий проверки; uvicorn поднимет свой.
    await container.engine.dispose()


def get_container(request: Request) -> Container:
    """FastAPI-зависимость: контейнер, сохранённый в app.state."""
    return request.app.state.container


__all__ = ["Container", "build_container", "startup_checks", "get_container"]
