# -*- coding: utf-8 -*-
# potkeeper/app/core/config_core.py
# =============================================================================
# Назначение:
#   • Единый конфигурационный модуль PotKeeper (оркестратор раундов + клиент
#     маяка случайности + шлюз леджера + история раундов).
#   • Канонический источник всех настроек: тайминги раунда, эндпоинты маяка,
#     URL релея леджера, БД, уведомления, периодические задачи.
#
# Канон / инварианты:
#   1) Леджер - единственный источник истины о фазе раунда. Здесь только
#      параметры опроса, никакой собственной «фазы».
#   2) Маяк: целевой блок = указатель финальности + BEACON_FUTURE_BLOCKS.
#      Смещение строго > 0, иначе хэш блока известен заранее.
#   3) Список эндпоинтов маяка упорядочен: первый - основной, остальные -
#      резерв (round-robin при сетевых сбоях).
#   4) Все интервалы и таймауты строго > 0.
#
# Запреты:
#   • Секреты (ключ релея, токен Telegram, DSN) не шьём в код - только ENV.
#   • Никаких сетевых вызовов при чтении настроек.
# =============================================================================

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Вспомогательные утилиты (локальные, без сетевых вызовов)
# =============================================================================


def _parse_csv(value: object) -> List[str]:
    """Преобразует CSV-строку 'a,b,c' в ['a', 'b', 'c'] (пробелы обрезаются)."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(x).strip() for x in value if str(x).strip()]
    s = str(value).strip()
    if not s:
        return []
    return [item.strip() for item in s.split(",") if item.strip()]


def _unique(items: Iterable[str]) -> List[str]:
    """Возвращает элементы без повторов, сохраняя порядок первого появления."""
    out: List[str] = []
    for item in items:
        if item not in out:
            out.append(item)
    return out


# =============================================================================
# Док-описания полей
# =============================================================================


class _Doc:
    # Приложение
    PROJECT_NAME = "Имя сервиса (в логах и /status)."
    ENV = "Окружение: production/dev/local (нормализуется в prod/dev/local)."
    DEBUG = "Расширенные логи (только для dev/local)."
    APP_VERSION = "Версия приложения (попадает в /status)."
    APP_HOST = "Адрес для uvicorn (обычно 0.0.0.0)."
    APP_PORT = "Порт для uvicorn."

    # Оркестратор
    GAME_CHECK_INTERVAL_SEC = "Интервал тика оркестратора (сек)."
    GAME_TIMER_DURATION_SEC = "Длительность фазы ставок (сек от startTime)."
    GAME_PROGRESS_THRESHOLDS = "Пороги логов обратного отсчёта (CSV, сек)."
    MAX_CONSECUTIVE_ERRORS = "После скольких подряд ошибок слать алерт."

    # Маяк случайности
    BEACON_RPC_ENDPOINTS = "Упорядоченный CSV-список RPC-эндпоинтов маяка."
    BEACON_FUTURE_BLOCKS = "Смещение целевого блока от указателя финальности."
    BEACON_POLL_INTERVAL_MS = "Интервал опроса целевого блока (мс)."
    BEACON_WAIT_TIMEOUT_SEC = "Жёсткий таймаут ожидания целевого блока (сек)."
    BEACON_REQUEST_TIMEOUT_SEC = "Таймаут одного HTTP-запроса к маяку (сек)."

    # Леджер
    LEDGER_API_URL = "Базовый URL релея леджера (операторский контракт-шлюз)."
    LEDGER_API_KEY = "API-ключ релея леджера."
    LEDGER_REQUEST_TIMEOUT_SEC = "Таймаут запроса к релею (включая ожидание включения tx)."
    MIN_OPERATOR_BALANCE = "Критический минимум баланса оператора (critical_error)."
    LOW_BALANCE_THRESHOLD = "Порог предупреждения о низком балансе (low_balance)."

    # БД
    DATABASE_URL = (
        "DSN БД истории раундов. postgres:// приводится к postgresql+asyncpg://."
    )
    DB_POOL_SIZE = "Размер пула соединений SQLAlchemy."
    DB_MAX_OVERFLOW = "Дополнительные соединения в пике."
    DB_SCHEMA = "Схема таблиц (пусто - схема по умолчанию)."

    # Уведомления
    TELEGRAM_BOT_TOKEN = "Токен бота для алертов (env: BOT_TOKEN)."
    ADMIN_NOTIFICATIONS_CHAT_ID = "Чат админов для алертов."
    NOTIFY_ERROR_COOLDOWN_SEC = "Кулдаун одинаковых алертов об ошибках (сек)."
    NOTIFY_BALANCE_COOLDOWN_SEC = "Кулдаун алертов о балансе (сек)."

    # Периодические задачи
    HEALTH_REPORT_INTERVAL_SEC = "Интервал health-отчёта (сек)."
    STATS_REPORT_INTERVAL_SEC = "Интервал сводки статистики (сек)."
    BALANCE_CHECK_INTERVAL_SEC = "Интервал проверки баланса оператора (сек)."

    # Logging
    LOG_LEVEL = "Уровень логирования (INFO/DEBUG/WARNING/ERROR)."


# =============================================================================
# Настройки приложения (единственный источник истины)
# =============================================================================


class Settings(BaseSettings):
    """
    Контейнер переменных окружения PotKeeper.

    Важное:
      • Секреты берём только из ENV - в код не шьём.
      • Обязательность ключей проверяется на старте
        (system_locks.validate_startup_config), а не при импорте, чтобы
        миграции/тесты могли жить с частичным конфигом.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        populate_by_name=True,
    )

    # --------------------------- БАЗОВЫЕ НАСТРОЙКИ ---------------------------
    PROJECT_NAME: str = Field("PotKeeper", description=_Doc.PROJECT_NAME)
    ENV: str = Field("production", description=_Doc.ENV)
    DEBUG: bool = Field(False, description=_Doc.DEBUG)
    APP_VERSION: str = Field("1.0.0", description=_Doc.APP_VERSION)
    APP_HOST: str = Field("0.0.0.0", description=_Doc.APP_HOST)
    APP_PORT: int = Field(8000, description=_Doc.APP_PORT)
    LOG_LEVEL: str = Field("INFO", description=_Doc.LOG_LEVEL)

    # ------------------------------ ОРКЕСТРАТОР ------------------------------
    GAME_CHECK_INTERVAL_SEC: float = Field(
        1.0,
        description=_Doc.GAME_CHECK_INTERVAL_SEC,
    )
    GAME_TIMER_DURATION_SEC: int = Field(
        60,
        description=_Doc.GAME_TIMER_DURATION_SEC,
    )
    GAME_PROGRESS_THRESHOLDS: str = Field(
        "30,10,5,0",
        description=_Doc.GAME_PROGRESS_THRESHOLDS,
    )
    MAX_CONSECUTIVE_ERRORS: int = Field(
        5,
        description=_Doc.MAX_CONSECUTIVE_ERRORS,
    )

    # --------------------------------- МАЯК ----------------------------------
    BEACON_RPC_ENDPOINTS: str = Field(
        "https://eos.greymass.com,https://eos.antelope.tools",
        description=_Doc.BEACON_RPC_ENDPOINTS,
    )
    BEACON_FUTURE_BLOCKS: int = Field(5, description=_Doc.BEACON_FUTURE_BLOCKS)
    BEACON_POLL_INTERVAL_MS: int = Field(
        500,
        description=_Doc.BEACON_POLL_INTERVAL_MS,
    )
    BEACON_WAIT_TIMEOUT_SEC: float = Field(
        300.0,
        description=_Doc.BEACON_WAIT_TIMEOUT_SEC,
    )
    BEACON_REQUEST_TIMEOUT_SEC: float = Field(
        10.0,
        description=_Doc.BEACON_REQUEST_TIMEOUT_SEC,
    )

    # -------------------------------- ЛЕДЖЕР ---------------------------------
    LEDGER_API_URL: Optional[str] = Field(None, description=_Doc.LEDGER_API_URL)
    LEDGER_API_KEY: Optional[str] = Field(None, description=_Doc.LEDGER_API_KEY)
    LEDGER_REQUEST_TIMEOUT_SEC: float = Field(
        60.0,
        description=_Doc.LEDGER_REQUEST_TIMEOUT_SEC,
    )
    MIN_OPERATOR_BALANCE: str = Field(
        "0.005",
        description=_Doc.MIN_OPERATOR_BALANCE,
    )
    LOW_BALANCE_THRESHOLD: str = Field(
        "0.01",
        description=_Doc.LOW_BALANCE_THRESHOLD,
    )

    # --------------------------------- БАЗА ----------------------------------
    DATABASE_URL: Optional[str] = Field(None, description=_Doc.DATABASE_URL)
    DB_POOL_SIZE: int = Field(5, description=_Doc.DB_POOL_SIZE)
    DB_MAX_OVERFLOW: int = Field(5, description=_Doc.DB_MAX_OVERFLOW)
    DB_SCHEMA: Optional[str] = Field(None, description=_Doc.DB_SCHEMA)

    # ------------------------------ УВЕДОМЛЕНИЯ ------------------------------
    TELEGRAM_BOT_TOKEN: Optional[str] = Field(
        None,
        validation_alias="BOT_TOKEN",
        description=_Doc.TELEGRAM_BOT_TOKEN,
    )
    ADMIN_NOTIFICATIONS_CHAT_ID: Optional[str] = Field(
        None,
        description=_Doc.ADMIN_NOTIFICATIONS_CHAT_ID,
    )
    NOTIFY_ERROR_COOLDOWN_SEC: int = Field(
        300,
        description=_Doc.NOTIFY_ERROR_COOLDOWN_SEC,
    )
    NOTIFY_BALANCE_COOLDOWN_SEC: int = Field(
        1800,
        description=_Doc.NOTIFY_BALANCE_COOLDOWN_SEC,
    )

    # ------------------------- ПЕРИОДИЧЕСКИЕ ЗАДАЧИ --------------------------
    HEALTH_REPORT_INTERVAL_SEC: int = Field(
        3600,
        description=_Doc.HEALTH_REPORT_INTERVAL_SEC,
    )
    STATS_REPORT_INTERVAL_SEC: int = Field(
        21600,
        description=_Doc.STATS_REPORT_INTERVAL_SEC,
    )
    BALANCE_CHECK_INTERVAL_SEC: int = Field(
        300,
        description=_Doc.BALANCE_CHECK_INTERVAL_SEC,
    )

    # =========================== ВАЛИДАТОРЫ ==================================

    @field_validator(
        "GAME_CHECK_INTERVAL_SEC",
        "GAME_TIMER_DURATION_SEC",
        "MAX_CONSECUTIVE_ERRORS",
        "BEACON_FUTURE_BLOCKS",
        "BEACON_POLL_INTERVAL_MS",
        "BEACON_WAIT_TIMEOUT_SEC",
        "BEACON_REQUEST_TIMEOUT_SEC",
        "LEDGER_REQUEST_TIMEOUT_SEC",
        "HEALTH_REPORT_INTERVAL_SEC",
        "STATS_REPORT_INTERVAL_SEC",
        "BALANCE_CHECK_INTERVAL_SEC",
    )
    @classmethod
    def _v_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("значение должно быть > 0")
        return value

    @field_validator("BEACON_RPC_ENDPOINTS")
    @classmethod
    def _v_beacon_endpoints(cls, value: str) -> str:
        """Нормализуем CSV: без пробелов, без хвостовых '/', без повторов."""
        urls = _unique(url.rstrip("/") for url in _parse_csv(value))
        return ",".join(urls)

    @field_validator("GAME_PROGRESS_THRESHOLDS")
    @classmethod
    def _v_thresholds(cls, value: str) -> str:
        try:
            parsed = [int(x) for x in _parse_csv(value)]
        except ValueError:
            raise ValueError("GAME_PROGRESS_THRESHOLDS - CSV целых чисел") from None
        if any(x < 0 for x in parsed):
            raise ValueError("пороги обратного отсчёта не могут быть < 0")
        return ",".join(str(x) for x in parsed)

    # =========================== Удобные свойства/методы =====================

    @property
    def env_normalized(self) -> str:
        """Нормализует ENV к одному из: prod/dev/local."""
        value = (self.ENV or "").strip().lower()
        if value.startswith("prod"):
            return "prod"
        if value.startswith("dev"):
            return "dev"
        if value.startswith("loc"):
            return "local"
        return "prod"

    @property
    def is_prod(self) -> bool:
        return self.env_normalized == "prod"

    @property
    def beacon_endpoints(self) -> List[str]:
        return _parse_csv(self.BEACON_RPC_ENDPOINTS)

    @property
    def progress_thresholds(self) -> frozenset[int]:
        return frozenset(int(x) for x in _parse_csv(self.GAME_PROGRESS_THRESHOLDS))

    @property
    def notifications_enabled(self) -> bool:
        return bool(self.TELEGRAM_BOT_TOKEN and self.ADMIN_NOTIFICATIONS_CHAT_ID)

    def database_url_async(self) -> str:
        """
        Возвращает DSN для SQLAlchemy async:
          postgres://   → postgresql+asyncpg://
          postgresql:// → postgresql+asyncpg:// при отсутствии драйвера.
        Прочие схемы (например, sqlite+aiosqlite://) отдаются как есть.
        """
        if not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL не задан (нужен DSN истории раундов).")
        url = self.DATABASE_URL
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql+asyncpg://", 1)
        elif url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    def ensure_local_artifacts(self) -> None:
        """Создаёт каталог .local_artifacts для local-режима (логи/кеш)."""
        if self.env_normalized == "local":
            Path(".local_artifacts").mkdir(exist_ok=True)

    def debug_dump(self) -> Dict[str, str]:
        """Безопасный дамп ключевых настроек (без секретов) для /status и логов."""
        return {
            "env": self.env_normalized,
            "projectName": self.PROJECT_NAME,
            "version": self.APP_VERSION,
            "checkIntervalSec": str(self.GAME_CHECK_INTERVAL_SEC),
            "timerDurationSec": str(self.GAME_TIMER_DURATION_SEC),
            "beaconEndpoints": str(len(self.beacon_endpoints)),
            "beaconFutureBlocks": str(self.BEACON_FUTURE_BLOCKS),
            "beaconWaitTimeoutSec": str(self.BEACON_WAIT_TIMEOUT_SEC),
            "ledgerUrlSet": "yes" if self.LEDGER_API_URL else "no",
            "dbUrlSet": "yes" if self.DATABASE_URL else "no",
            "notifications": "on" if self.notifications_enabled else "off",
        }


# =============================================================================
# Кэш настроек процесса
# =============================================================================


@lru_cache()
def get_settings() -> Settings:
    """Создаёт и кэширует объект Settings."""
    settings_obj = Settings()
    settings_obj.ensure_local_artifacts()
    return settings_obj


__all__ = ["Settings", "get_settings"]

# =============================================================================
# Пояснения «для чайника»:
#   • Настройки читаются один раз и передаются в компоненты явно (deps.py):
#     оркестратор и клиент маяка не лезут в get_settings() сами.
#   • BEACON_RPC_ENDPOINTS - CSV: первый эндпоинт основной, остальные резерв.
#   • Отсутствие LEDGER_API_URL/DATABASE_URL не мешает импорту, но остановит
#     процесс на старте (validate_startup_config).
# =============================================================================
