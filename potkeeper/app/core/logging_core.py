# -*- coding: utf-8 -*-
# potkeeper/app/core/logging_core.py
# =============================================================================
# Назначение кода:
#   Централизованная настройка логирования PotKeeper:
#   • формат и хэндлеры (prod - JSON, dev/local - читаемые строки);
#   • контекст корреляции раунда (какой round_id сейчас обрабатывается);
#   • защита от утечек секретов (ключ релея леджера, токен бота, DSN).
#
# Канон / инварианты:
#   • Каждая запись несёт env, svc и round (или "-", если раунда нет).
#   • Логи не имеют права «ронять» оркестратор: ошибки фильтра → мягкая
#     деградация.
#
# Запреты:
#   • Никаких сетевых/блокирующих операций в форматерах/фильтрах.
#   • Никакого логирования ключей кошелька оператора. Сид логировать можно:
#     это хэш публичного блока маяка.
# =============================================================================

from __future__ import annotations

import contextvars
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pythonjsonlogger.json import JsonFormatter

from potkeeper.app.core.config_core import Settings, get_settings

# -----------------------------------------------------------------------------
# Контекст корреляции: текущий раунд (contextvars безопасны для asyncio)
# -----------------------------------------------------------------------------
_round_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "round",
    default=None,
)


def set_round_context(round_id: Optional[int | str]) -> contextvars.Token:
    """
    Привязать round_id к текущей задаче.

    Возвращает токен, который нужно отдать в reset_round_context()
    в finally-блоке, чтобы контекст не «тёк» в следующий тик.
    """
    return _round_var.set(None if round_id is None else str(round_id))


def reset_round_context(token: contextvars.Token) -> None:
    _round_var.reset(token)


# -----------------------------------------------------------------------------
# Фильтры логирования
# -----------------------------------------------------------------------------
class ContextFilter(logging.Filter):
    """
    Впрыскивает в запись поля env / svc / round.

    Уже заданные поля (через extra или LoggerAdapter) не переопределяет.
    """

    def __init__(self, env: str, service: str) -> None:
        super().__init__()
        self._env = env
        self._svc = service

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "env"):
            record.env = self._env
        if not hasattr(record, "svc"):
            record.svc = self._svc
        if not hasattr(record, "round"):
            record.round = _round_var.get() or "-"
        return True


class RedactingFilter(logging.Filter):
    """
    Маскирует реальные значения секретов из настроек в message/args.

    Фильтр не должен ломать логирование ни при каких входных данных.
    """

    MASK = "****"
    SECRET_KEYS: Tuple[str, ...] = (
        "LEDGER_API_KEY",
        "TELEGRAM_BOT_TOKEN",
        "DATABASE_URL",
    )

    def __init__(self, settings_obj: object) -> None:
        super().__init__()
        self._secrets: list[str] = []
        for key in self.SECRET_KEYS:
            val = getattr(settings_obj, key, None)
            if val and isinstance(val, str):
                self._secrets.append(val)

    def redact(self, text: str) -> str:
        if not text:
            return text
        for secret in self._secrets:
            if secret in text:
                text = text.replace(secret, self.MASK)
        return text

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        try:
            if isinstance(record.msg, str):
                record.msg = self.redact(record.msg)
            if isinstance(record.args, tuple):
                record.args = tuple(
                    self.redact(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )
        except Exception:  # noqa: BLE001
            pass
        return True


# -----------------------------------------------------------------------------
# Форматеры
# -----------------------------------------------------------------------------
class DevFormatter(logging.Formatter):
    """
    Человекочитаемый формат для local/dev.

    2026-01-01 12:00:00 | INFO     | PotKeeper | potkeeper.app... | round=7 | msg
    """

    def __init__(self) -> None:
        super().__init__(
            fmt=(
                "%(asctime)s | %(levelname)-8s | %(svc)s | %(name)s | "
                "round=%(round)s | %(message)s"
            ),
            datefmt="%Y-%m-%d %H:%M:%S",
        )


class PotJsonFormatter(JsonFormatter):
    """JSON-формат для prod: стабильные ключи + все extra-поля записи."""

    _RENAMES: Dict[str, str] = {
        "asctime": "time",
        "levelname": "level",
        "svc": "service",
        "name": "logger",
        "message": "msg",
    }

    def process_log_record(self, log_record: Dict[str, Any]) -> Dict[str, Any]:
        base = super().process_log_record(log_record)
        return {self._RENAMES.get(key, key): value for key, value in base.items()}


def _make_json_formatter() -> logging.Formatter:
    return PotJsonFormatter(
        "%(asctime)s %(levelname)s %(svc)s %(name)s %(env)s %(round)s %(message)s"
    )


# -----------------------------------------------------------------------------
# Инициализация логирования
# -----------------------------------------------------------------------------
def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Полностью настраивает root-логгер:

      • консоль (stdout) и файл (только local);
      • фильтры контекста и редактирования секретов;
      • uvicorn/fastapi-логгеры → в root (единый формат);
      • httpx - не ниже WARNING (иначе каждый опрос маяка попадает в лог).
    """
    settings = settings or get_settings()
    env = settings.env_normalized
    debug = bool(settings.DEBUG)

    root = logging.getLogger()
    root.handlers.clear()
    level = logging.DEBUG if debug else logging.getLevelName(
        (settings.LOG_LEVEL or "INFO").upper()
    )
    if not isinstance(level, int):
        level = logging.INFO
    root.setLevel(level)

    ctx_filter = ContextFilter(env=env, service=settings.PROJECT_NAME)
    redact_filter = RedactingFilter(settings_obj=settings)

    console_handler = logging.StreamHandler(sys.stdout)
    if env in ("local", "dev"):
        formatter: logging.Formatter = DevFormatter()
    else:
        formatter = _make_json_formatter()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(ctx_filter)
    console_handler.addFilter(redact_filter)
    root.addHandler(console_handler)

    if env == "local":
        logs_dir = Path(".local_artifacts") / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(logs_dir / "potkeeper.log", encoding="utf-8")
        file_handler.setFormatter(DevFormatter())
        file_handler.addFilter(ctx_filter)
        file_handler.addFilter(redact_filter)
        root.addHandler(file_handler)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi"):
        lg = logging.getLogger(name)
        lg.handlers.clear()
        lg.setLevel(level)
        lg.propagate = True

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        "Logging initialized",
        extra={"details": {"env": env, "debug": debug, "level": logging.getLevelName(level)}},
    )


def get_logger(name: Optional[str] = None, **extra: Any) -> logging.Logger:
    """
    Логгер по имени; при наличии extra - LoggerAdapter с привязанными полями.

        log = get_logger(__name__, component="beacon")
    """
    base = logging.getLogger(name)
    if not extra:
        return base
    return logging.LoggerAdapter(base, extra)  # type: ignore[return-value]


__all__ = [
    "ContextFilter",
    "RedactingFilter",
    "DevFormatter",
    "PotJsonFormatter",
    "setup_logging",
    "get_logger",
    "set_round_context",
    "reset_round_context",
]
# =============================================================================
# Пояснения «для чайника»:
#   • setup_logging() вызывается один раз в run.py до создания контейнера.
#   • В dev/local - читаемые строки, в prod - JSON с ключами
#     time/level/service/logger/env/round/msg + все extra-поля.
#   • Оркестратор выставляет round через set_round_context на время тика,
#     поэтому все логи шлюза/маяка внутри тика помечены номером раунда.
# =============================================================================
