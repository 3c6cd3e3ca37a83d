# -*- coding: utf-8 -*-
# potkeeper/app/core/errors_core.py
# =============================================================================
# Назначение кода:
#   • Единый слой доменных ошибок PotKeeper: маяк случайности, шлюз леджера,
#     конфигурация/старт.
#   • Стабильные машинные коды для логов, уведомлений и HTTP-ответов /status.
#
# Канон / инварианты:
#   • Интеграции бросают ТОЛЬКО исключения из этого модуля.
#     Голые httpx-ошибки наружу не выходят.
#   • Оркестратор ловит всё на границе тика - эти классы нужны, чтобы
#     различать «ожидаемый отказ» (LedgerRejectedError) и реальный сбой.
#   • Наружу (HTTP) не утекают DSN/ключи/стек.
#
# Запреты:
#   • Никакой бизнес-логики раунда здесь нет.
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from potkeeper.app.core.logging_core import get_logger

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Базовая доменная ошибка
# -----------------------------------------------------------------------------
@dataclass(eq=False)
class PotError(Exception):
    """
    Базовое доменное исключение PotKeeper.

    Поля:
      • code         - стабильный машинный код (snake_case).
      • message      - короткое безопасное сообщение.
      • http_status  - HTTP-код, если ошибка дошла до роутов.
      • details      - безопасные детали (без секретов).
    """

    code: str
    message: str
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def _init(
    self: PotError,
    code: str,
    message: str,
    http_status: int,
    details: Optional[Dict[str, Any]],
) -> None:
    PotError.__init__(
        self,
        code=code,
        message=message,
        http_status=http_status,
        details=details or {},
    )


# -----------------------------------------------------------------------------
# Маяк случайности
# -----------------------------------------------------------------------------
class BeaconError(PotError):
    """Общая ошибка клиента маяка."""

    def __init__(
        self,
        message: str = "Beacon error.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        _init(self, "beacon_error", message, status.HTTP_502_BAD_GATEWAY, details)


class BeaconUnavailableError(BeaconError):
    """Все эндпоинты маяка недоступны (каждый попробован по разу)."""

    def __init__(
        self,
        message: str = "All beacon endpoints are unavailable.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        _init(
            self,
            "beacon_unavailable",
            message,
            status.HTTP_503_SERVICE_UNAVAILABLE,
            details,
        )


class BeaconTimeout(BeaconError):
    """Целевой блок не появился за отведённое время."""

    def __init__(
        self,
        message: str = "Timed out waiting for the target block.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        _init(self, "beacon_timeout", message, status.HTTP_504_GATEWAY_TIMEOUT, details)


class MalformedSeedError(BeaconError):
    """Хэш блока не удалось привести к виду 0x + 64 hex."""

    def __init__(
        self,
        message: str = "Block hash is not a 32-byte hex string.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        _init(self, "malformed_seed", message, status.HTTP_502_BAD_GATEWAY, details)


class BlockNotFoundError(BeaconError):
    """Блок с запрошенным номером не найден (при проверке доказательства)."""

    def __init__(
        self,
        message: str = "Block not found.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        _init(self, "block_not_found", message, status.HTTP_404_NOT_FOUND, details)


# -----------------------------------------------------------------------------
# Леджер
# -----------------------------------------------------------------------------
class LedgerError(PotError):
    """Транспортный сбой / 5xx / некорректный ответ релея леджера."""

    def __init__(
        self,
        message: str = "Ledger gateway error.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        _init(self, "ledger_error", message, status.HTTP_502_BAD_GATEWAY, details)


class LedgerRejectedError(LedgerError):
    """
    Леджер отклонил операцию (гонка, неверная фаза, revert).

    Ожидаемая ситуация: следующий тик перечитает состояние и продолжит.
    """

    def __init__(
        self,
        message: str = "Ledger rejected the operation.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        _init(self, "ledger_rejected", message, status.HTTP_409_CONFLICT, details)


class UnknownPhaseError(LedgerError):
    """Леджер вернул фазу вне {0,1,2,3}."""

    def __init__(
        self,
        message: str = "Unknown round phase.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        _init(self, "unknown_phase", message, status.HTTP_502_BAD_GATEWAY, details)


# -----------------------------------------------------------------------------
# Конфигурация / старт
# -----------------------------------------------------------------------------
class ConfigError(PotError):
    """Обязательная настройка отсутствует или некорректна."""

    def __init__(
        self,
        message: str = "Invalid configuration.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        _init(self, "config_error", message, status.HTTP_500_INTERNAL_SERVER_ERROR, details)


class StartupError(PotError):
    """Стартовая проверка зависимостей (маяк/леджер/БД) не прошла."""

    def __init__(
        self,
        message: str = "Startup checks failed.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        _init(self, "startup_error", message, status.HTTP_503_SERVICE_UNAVAILABLE, details)


class NotFoundError(PotError):
    """Ресурс не найден (раунд, доказательство)."""

    def __init__(
        self,
        message: str = "Resource not found.",
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        _init(self, "not_found", message, status.HTTP_404_NOT_FOUND, details)


# -----------------------------------------------------------------------------
# Нормализация исключений → (status_code, payload)
# -----------------------------------------------------------------------------
def normalize_exception(exc: BaseException) -> Tuple[int, Dict[str, Any]]:
    """
    Приводит произвольное исключение к HTTP-ответу.

      • PotError       → свой http_status + to_payload().
      • HTTPException  → status_code + {"error": "http_error"}.
      • прочее         → 500 + {"error": "internal_error"} без деталей.
    """
    if isinstance(exc, PotError):
        return exc.http_status, exc.to_payload()

    if isinstance(exc, HTTPException):
        msg = exc.detail if isinstance(exc.detail, str) else "HTTP error."
        return exc.status_code, {"error": "http_error", "message": msg}

    logger.exception("Unhandled exception", extra={"error_type": type(exc).__name__})
    return (
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        {"error": "internal_error", "message": "Internal server error."},
    )


# -----------------------------------------------------------------------------
# FastAPI-хендлеры
# -----------------------------------------------------------------------------
async def pot_error_handler(request: Request, exc: PotError) -> JSONResponse:
    status_code, payload = normalize_exception(exc)
    logger.warning(
        "PotError handled",
        extra={"path": request.url.path, "error": exc.code, "status": status_code},
    )
    return JSONResponse(status_code=status_code, content=payload)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code, payload = normalize_exception(exc)
    logger.error(
        "Unhandled exception handled by generic handler",
        extra={
            "path": request.url.path,
            "status": status_code,
            "exc_type": type(exc).__name__,
        },
    )
    return JSONResponse(status_code=status_code, content=payload)


def setup_exception_handlers(app: FastAPI) -> None:
    """Подключает обработчики исключений (вызывать один раз в create_app)."""
    app.add_exception_handler(PotError, pot_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
    logger.info("Exception handlers registered for PotError/Exception")


__all__ = [
    "PotError",
    "BeaconError",
    "BeaconUnavailableError",
    "BeaconTimeout",
    "MalformedSeedError",
    "BlockNotFoundError",
    "LedgerError",
    "LedgerRejectedError",
    "UnknownPhaseError",
    "ConfigError",
    "StartupError",
    "NotFoundError",
    "normalize_exception",
    "setup_exception_handlers",
]
# =============================================================================
# Пояснения «для чайника»:
#   • LedgerRejectedError - это «не страшно»: кто-то успел раньше или фаза
#     уже сменилась. Оркестратор пишет info и ждёт следующего тика.
#   • BeaconTimeout/BeaconUnavailableError - раунд остаётся в Locked, тик
#     повторит попытку; при серии ошибок уйдёт алерт админам.
# =============================================================================
