# -*- coding: utf-8 -*-
from __future__ import annotations

import httpx
import pytest

from potkeeper.app.core.config_core import Settings
from potkeeper.app.core.errors_core import StartupError
from potkeeper.app.deps import build_container, startup_checks


def beacon_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"last_irreversible_block_num": 500})


def beacon_down(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("refused", request=request)


def ledger_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"roundId": "1", "phase": 0})


def ledger_down(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503, text="maintenance")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        LEDGER_API_URL="http://ledger.test",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'deps.db'}",
        BEACON_RPC_ENDPOINTS="http://beacon-a.test,http://beacon-b.test",
        GAME_TIMER_DURATION_SEC=90,
        LOW_BALANCE_THRESHOLD="0.02",
    )


def build(settings, beacon_handler, ledger_handler):
    return build_container(
        settings,
        beacon_transport=httpx.MockTransport(beacon_handler),
        ledger_transport=httpx.MockTransport(ledger_handler),
    )


def test_container_shares_single_instances(settings):
    container = build(settings, beacon_ok, ledger_ok)

    assert container.orchestrator.beacon is container.beacon
    assert container.orchestrator.ledger is container.ledger
    assert container.orchestrator.store is container.store
    assert container.auditor.store is container.store
    assert container.reporter.stats is container.orchestrator.stats
    assert container.orchestrator.timer_duration == 90
    assert str(container.balance_monitor.warn_threshold) == "0.02"
    assert container.beacon.endpoints == ["http://beacon-a.test", "http://beacon-b.test"]


async def test_startup_checks_pass(settings):
    container = build(settings, beacon_ok, ledger_ok)
    await startup_checks(container)


async def test_startup_fails_when_beacon_unreachable(settings):
    container = build(settings, beacon_down, ledger_ok)

    with pytest.raises(StartupError) as info:
        await startup_checks(container)
    assert "Beacon" in info.value.message


async def test_startup_fails_when_ledger_unreachable(settings):
    container = build(settings, beacon_ok, ledger_down)

    with pytest.raises(StartupError) as info:
        await startup_checks(container)
    assert "Ledger" in info.value.message
