# -*- coding: utf-8 -*-
from __future__ import annotations

import json
from typing import List

import httpx

from potkeeper.app.services import notifications_service as events
from potkeeper.app.services.notifications_service import NotificationService, format_message


class ManualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TelegramStub:
    def __init__(self, status: int = 200) -> None:
        self.status = status
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json={"ok": self.status == 200})

    def texts(self) -> List[str]:
        return [json.loads(r.content)["text"] for r in self.requests]


def make_service(stub: TelegramStub, clock: ManualClock, **kwargs) -> NotificationService:
    kwargs.setdefault("bot_token", "123:abc")
    kwargs.setdefault("chat_id", "-100200")
    return NotificationService(transport=httpx.MockTransport(stub.handler), clock=clock, **kwargs)


def test_format_message_escapes_html():
    text = format_message(events.ERROR, {"type": "beacon", "message": "<b>boom</b>", "round": None})
    assert text.startswith("<b>")
    assert "&lt;b&gt;boom&lt;/b&gt;" in text
    assert "round" not in text


async def test_disabled_service_only_logs():
    stub = TelegramStub()
    service = NotificationService(transport=httpx.MockTransport(stub.handler))

    assert service.enabled is False
    assert await service.notify(events.WINNER_DRAWN, {"winner": "0x1"}) is False
    assert stub.requests == []


async def test_sends_to_admin_chat():
    stub = TelegramStub()
    service = make_service(stub, ManualClock())

    assert await service.notify(events.WINNER_DRAWN, {"round": "7", "winner": "0xW"}) is True

    request = stub.requests[0]
    assert request.url.path.endswith("/sendMessage")
    payload = json.loads(request.content)
    assert payload["chat_id"] == "-100200"
    assert payload["parse_mode"] == "HTML"
    assert "0xW" in payload["text"]
    assert service.sent == 1


async def test_error_cooldown_per_type():
    stub = TelegramStub()
    clock = ManualClock()
    service = make_service(stub, clock, error_cooldown=300)

    assert await service.notify(events.ERROR, {"type": "beacon_timeout"}) is True
    assert await service.notify(events.ERROR, {"type": "beacon_timeout"}) is False
    assert await service.notify(events.ERROR, {"type": "ledger_error"}) is True

    clock.now = 301
    assert await service.notify(events.ERROR, {"type": "beacon_timeout"}) is True
    assert service.suppressed == 1


async def test_low_balance_cooldown_and_forced_critical():
    stub = TelegramStub()
    clock = ManualClock()
    service = make_service(stub, clock, balance_cooldown=1800)

    assert await service.notify(events.LOW_BALANCE, {"balance": "0.008"}) is True
    clock.now = 60
    assert await service.notify(events.LOW_BALANCE, {"balance": "0.007"}) is False
    assert await service.notify(events.CRITICAL_ERROR, {"type": "critical_balance"}) is True
    assert await service.notify(events.CRITICAL_ERROR, {"type": "critical_balance"}) is True


async def test_telegram_failure_is_not_raised():
    stub = TelegramStub(status=502)
    service = make_service(stub, ManualClock())

    assert await service.notify(events.STARTUP, {}) is False
    assert service.sent == 0


async def test_transport_error_is_not_raised():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no route", request=request)

    service = NotificationService(
        bot_token="t",
        chat_id="c",
        transport=httpx.MockTransport(handler),
    )
    assert await service.notify(events.SHUTDOWN, {}) is False


async def test_dispatch_is_fire_and_forget():
    stub = TelegramStub()
    service = make_service(stub, ManualClock())

    task = service.dispatch(events.ROUND_CANCELLED, {"round": "4"})
    assert stub.requests == []

    await service.drain()

    assert task.done()
    assert "4" in stub.texts()[0]
