# -*- coding: utf-8 -*-
# potkeeper/app/core/utils_core.py
# =============================================================================
# Назначение:
#   • Базовые утилиты уровня "core" без зависимостей от FastAPI/SQLAlchemy.
#   • Время (UTC, unix ↔ datetime, ISO-строки маяка).
#   • Decimal-суммы леджера (банк раунда, баланс оператора) - строго строкой,
#     без float.
#
# Канон:
#   • Все функции чистые: без сетевых вызовов и побочных эффектов.
#   • Суммы леджера - целые минимальные единицы или десятичные строки;
#     в БД пишем строку как есть, чтобы не терять точность.
# =============================================================================

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union

NumberLike = Union[str, int, float, Decimal]


# -----------------------------------------------------------------------------
# Время
# -----------------------------------------------------------------------------
def utc_now() -> datetime:
    """Текущее время в UTC (timezone-aware)."""
    return datetime.now(timezone.utc)


def from_unix(ts: Union[int, float]) -> datetime:
    """Unix-секунды → datetime UTC."""
    return datetime.fromtimestamp(float(ts), tz=timezone.utc)


def parse_chain_timestamp(value: Any) -> Optional[datetime]:
    """
    Разбирает timestamp блока маяка.

    Antelope-узлы отдают ISO без зоны ("2026-01-01T12:00:00.500") - считаем UTC.
    Нечитаемое значение → None (доказательство всё равно сохраняется).
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return from_unix(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


# -----------------------------------------------------------------------------
# Decimal
# -----------------------------------------------------------------------------
def decimal_from(value: NumberLike) -> Decimal:
    """
    Безопасно приводит значение к Decimal (float - через str()).

    Raises:
        ValueError: значение не является числом.
    """
    if isinstance(value, Decimal):
        return value
    try:
        if isinstance(value, float):
            return Decimal(str(value))
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"not a decimal: {value!r}") from None


def amount_str(value: Any) -> str:
    """Нормализует сумму леджера к десятичной строке ('0' для пустых)."""
    if value is None or value == "":
        return "0"
    return format(decimal_from(value), "f")


__all__ = [
    "utc_now",
    "from_unix",
    "parse_chain_timestamp",
    "iso",
    "decimal_from",
    "amount_str",
]
