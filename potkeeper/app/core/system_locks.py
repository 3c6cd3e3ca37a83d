# -*- coding: utf-8 -*-
# potkeeper/app/core/system_locks.py
# =============================================================================
# Назначение кода:
#   «Замки» PotKeeper - инварианты, которые проверяются до старта процесса и
#   на каждом тике оркестратора:
#   • не более одного тика одновременно (single-flight);
#   • сид в finish - строго 0x + 64 hex (нижний регистр);
#   • без маяка, леджера и БД процесс не стартует.
#
# Канон / инварианты:
#   • Флаг занятости выставляется ДО первого await и снимается в finally.
#     Исключение в тике никогда не оставляет оркестратор «запертым».
#   • Перекрывающиеся тики отбрасываются, а не ставятся в очередь.
#
# Запреты:
#   • Никаких блокирующих ожиданий: try_acquire() либо берёт замок, либо
#     сразу возвращает False.
#   • Никакой бизнес-логики раунда здесь нет.
# =============================================================================

from __future__ import annotations

import re
from typing import List

from potkeeper.app.core.config_core import Settings
from potkeeper.app.core.errors_core import ConfigError, MalformedSeedError
from potkeeper.app.core.logging_core import get_logger

logger = get_logger(__name__)

SEED_RE = re.compile(r"^0x[0-9a-f]{64}$")


# -----------------------------------------------------------------------------
# Single-flight
# -----------------------------------------------------------------------------
class SingleFlight:
    """
    Неблокирующий флаг «операция уже идёт».

    Использование:
        if not guard.try_acquire():
            return            # предыдущий тик ещё не закончился
        try:
            ...
        finally:
            guard.release()

    В однопоточном asyncio проверка и установка флага атомарны, пока между
    ними нет await - поэтому asyncio.Lock здесь не нужен.
    """

    def __init__(self, name: str = "tick") -> None:
        self.name = name
        self._held = False
        self.dropped = 0

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        if self._held:
            self.dropped += 1
            return False
        self._held = True
        return True

    def release(self) -> None:
        self._held = False


# -----------------------------------------------------------------------------
# Формат сида
# -----------------------------------------------------------------------------
def is_valid_seed(seed: object) -> bool:
    return isinstance(seed, str) and bool(SEED_RE.match(seed))


def assert_seed_format(seed: object) -> str:
    """
    Проверяет канонический формат сида: ^0x[0-9a-f]{64}$.

    Возвращает сид без изменений; при несоответствии - MalformedSeedError.
    Вызывается и клиентом маяка (после нормализации), и шлюзом леджера
    (перед отправкой finish), чтобы не тратить транзакцию впустую.
    """
    if not is_valid_seed(seed):
        raise MalformedSeedError(details={"seed": str(seed)[:80]})
    return seed  # type: ignore[return-value]


# -----------------------------------------------------------------------------
# Стартовая проверка конфигурации
# -----------------------------------------------------------------------------
def validate_startup_config(settings: Settings) -> None:
    """
    Проверяет обязательные ключи перед стартом процесса.

    Обязательны: хотя бы один эндпоинт маяка, URL релея леджера, DSN БД.
    Отсутствие каналов уведомлений - только предупреждение.
    """
    missing: List[str] = []
    if not settings.beacon_endpoints:
        missing.append("BEACON_RPC_ENDPOINTS")
    if not settings.LEDGER_API_URL:
        missing.append("LEDGER_API_URL")
    if not settings.DATABASE_URL:
        missing.append("DATABASE_URL")

    if missing:
        logger.critical("Required configuration is missing", extra={"missing": missing})
        raise ConfigError(
            "Missing required configuration.",
            details={"missing": missing},
        )

    if not settings.notifications_enabled:
        logger.warning(
            "Admin notifications are disabled (BOT_TOKEN or ADMIN_NOTIFICATIONS_CHAT_ID unset)"
        )


__all__ = [
    "SEED_RE",
    "SingleFlight",
    "is_valid_seed",
    "assert_seed_format",
    "validate_startup_config",
]
