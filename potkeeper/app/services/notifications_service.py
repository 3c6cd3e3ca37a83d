# -*- coding: utf-8 -*-
# potkeeper/app/services/notifications_service.py
# =============================================================================
# PotKeeper - уведомления админам (Telegram)
# -----------------------------------------------------------------------------
# Назначение:
#   • Единая «раковина» операционных событий: старт/остановка, победитель,
#     отмена раунда, ошибки, серия ошибок, низкий баланс, отчёты.
#   • Каждое событие всегда пишется в лог; в Telegram - если заданы токен
#     и чат.
#
# Инварианты и ИИ-защита:
#   1) Уведомления - fire-and-forget: dispatch() ставит фоновую задачу и
#      сразу возвращает управление; раунды от них не зависят.
#   2) Сбой Telegram НИКОГДА не ломает оркестратор: ошибка логируется как
#      warning и не поднимается наружу.
#   3) Кулдауны: одинаковые ошибки - не чаще NOTIFY_ERROR_COOLDOWN_SEC,
#      низкий баланс - не чаще NOTIFY_BALANCE_COOLDOWN_SEC. Критические
#      события шлются всегда.
#
# Запреты:
#   • Никаких вызовов леджера/маяка/БД.
#   • Токен бота не логируется (RedactingFilter дополнительно маскирует).
# =============================================================================

from __future__ import annotations

import asyncio
import html
import time
from typing import Any, Callable, Dict, Mapping, Optional, Set, Tuple

import httpx

from potkeeper.app.core.logging_core import get_logger

logger = get_logger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"

# Коды событий
STARTUP = "startup"
SHUTDOWN = "shutdown"
WINNER_DRAWN = "winner_drawn"
ROUND_CANCELLED = "round_cancelled"
ERROR = "error"
CONSECUTIVE_ERRORS = "consecutive_errors"
CRITICAL_ERROR = "critical_error"
LOW_BALANCE = "low_balance"
HEALTH_CHECK = "health_check"
STATS_REPORT = "stats_report"

EVENT_TITLES: Dict[str, str] = {
    STARTUP: "🚀 PotKeeper started",
    SHUTDOWN: "🛑 PotKeeper stopped",
    WINNER_DRAWN: "🎉 Winner drawn",
    ROUND_CANCELLED: "↩️ Round cancelled (no tickets)",
    ERROR: "⚠️ Automation error",
    CONSECUTIVE_ERRORS: "⚠️ Too many consecutive errors",
    CRITICAL_ERROR: "🚨 CRITICAL ERROR",
    LOW_BALANCE: "⚠️ Low operator balance",
    HEALTH_CHECK: "💓 Health check",
    STATS_REPORT: "📊 Stats report",
}

_FORCED_EVENTS = frozenset({STARTUP, SHUTDOWN, CRITICAL_ERROR})


def format_message(event: str, data: Mapping[str, Any]) -> str:
    """Заголовок события + строки «ключ: значение» (HTML для Telegram)."""
    lines = [f"<b>{html.escape(EVENT_TITLES.get(event, event))}</b>"]
    for key, value in data.items():
        if value is None:
            continue
        lines.append(f"<b>{html.escape(str(key))}</b>: <code>{html.escape(str(value))}</code>")
    return "\n".join(lines)


class NotificationService:
    """
    Отправка операционных событий в лог и (опционально) в Telegram-чат админов.

    Кулдауны считаются по monotonic-часам процесса; часы внедряются для тестов.
    """

    def __init__(
        self,
        *,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        error_cooldown: float = 300.0,
        balance_cooldown: float = 1800.0,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bot_token = bot_token or ""
        self._chat_id = str(chat_id or "")
        self.error_cooldown = float(error_cooldown)
        self.balance_cooldown = float(balance_cooldown)
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._clock = clock
        self._cooldowns: Dict[str, float] = {}
        self._pending: Set[asyncio.Task] = set()
        self.sent = 0
        self.suppressed = 0

    @property
    def enabled(self) -> bool:
        return bool(self._bot_token and self._chat_id)

    # ------------------------------------------------------------------
    # Кулдауны
    # ------------------------------------------------------------------
    def _cooldown_for(self, event: str, data: Mapping[str, Any]) -> Tuple[Optional[str], float]:
        if event in (ERROR, CONSECUTIVE_ERRORS):
            return f"{event}_{data.get('type') or 'generic'}", self.error_cooldown
        if event == LOW_BALANCE:
            return LOW_BALANCE, self.balance_cooldown
        return None, 0.0

    def is_on_cooldown(self, key: str, window: float) -> bool:
        last = self._cooldowns.get(key)
        return last is not None and (self._clock() - last) < window

    # ------------------------------------------------------------------
    # Отправка
    # ------------------------------------------------------------------
    async def _send_telegram(self, text_message: str) -> bool:
        url = f"{TELEGRAM_API_BASE}/bot{self._bot_token}/sendMessage"
        payload = {
            "chat_id": self._chat_id,
            "text": text_message,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post(url, json=payload)
            if response.status_code >= 400:
                logger.warning(
                    "Telegram sendMessage rejected",
                    extra={"status": response.status_code},
                )
                return False
            return True
        except httpx.HTTPError as exc:
            logger.warning("Telegram sendMessage failed: %s", type(exc).__name__)
            return False

    async def notify(self, event: str, data: Optional[Mapping[str, Any]] = None) -> bool:
        """
        Записать событие в лог и отправить админам.

        Returns:
            True - сообщение ушло в Telegram; False - отключено, кулдаун или сбой.
        """
        data = dict(data or {})
        key, window = self._cooldown_for(event, data)
        if key is not None and event not in _FORCED_EVENTS and self.is_on_cooldown(key, window):
            self.suppressed += 1
            logger.debug("Notification suppressed by cooldown", extra={"event": event})
            return False
        if key is not None:
            self._cooldowns[key] = self._clock()

        logger.info("Notification: %s", event, extra={"event": event, "data": data})
        if not self.enabled:
            return False

        delivered = await self._send_telegram(format_message(event, data))
        if delivered:
            self.sent += 1
        return delivered

    def dispatch(self, event: str, data: Optional[Mapping[str, Any]] = None) -> asyncio.Task:
        """
        Fire-and-forget: ставит notify() фоновой задачей.

        Ссылка на задачу хранится до её завершения, иначе asyncio может
        собрать её сборщиком мусора посреди отправки.
        """
        task = asyncio.create_task(self.notify(event, data), name=f"notify:{event}")
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Notification task failed", exc_info=exc)

    async def drain(self, timeout: float = 5.0) -> None:
        """Дождаться отправки отложенных уведомлений (shutdown)."""
        if not self._pending:
            return
        pending = list(self._pending)
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning("Dropped pending notifications on shutdown", extra={"count": len(not_done)})


__all__ = [
    "NotificationService",
    "format_message",
    "EVENT_TITLES",
    "STARTUP",
    "SHUTDOWN",
    "WINNER_DRAWN",
    "ROUND_CANCELLED",
    "ERROR",
    "CONSECUTIVE_ERRORS",
    "CRITICAL_ERROR",
    "LOW_BALANCE",
    "HEALTH_CHECK",
    "STATS_REPORT",
]
# =============================================================================
# Пояснения «для чайника»:
#   • Без BOT_TOKEN/ADMIN_NOTIFICATIONS_CHAT_ID уведомления просто пишутся
#     в лог - сервис работает как обычно.
#   • dispatch() не ждёт Telegram: тик оркестратора не тормозит из-за сети.
# =============================================================================
