# -*- coding: utf-8 -*-
from __future__ import annotations

from decimal import Decimal

import pytest

from potkeeper.app.core.errors_core import NotFoundError
from potkeeper.app.services import notifications_service as events
from potkeeper.app.services.monitoring_service import BalanceMonitor, ProofAuditor, Reporter
from potkeeper.app.services.round_orchestrator import OrchestratorStats

from .conftest import SEED


def make_monitor(ledger, notifier) -> BalanceMonitor:
    return BalanceMonitor(
        ledger,
        notifier,
        warn_threshold=Decimal("0.01"),
        critical_floor=Decimal("0.005"),
    )


async def test_healthy_balance_sends_nothing(ledger, notifier):
    ledger.balance = Decimal("0.5")
    monitor = make_monitor(ledger, notifier)

    assert await monitor.run_once() == Decimal("0.5")
    assert notifier.events == []
    assert monitor.last_balance == Decimal("0.5")


async def test_low_balance_warns(ledger, notifier):
    ledger.balance = Decimal("0.008")
    await make_monitor(ledger, notifier).run_once()

    assert notifier.names() == [events.LOW_BALANCE]


async def test_balance_below_floor_is_critical(ledger, notifier):
    ledger.balance = Decimal("0.001")
    await make_monitor(ledger, notifier).run_once()

    assert notifier.names() == [events.LOW_BALANCE, events.CRITICAL_ERROR]


async def test_reports_use_orchestrator_stats(ledger, notifier):
    stats = OrchestratorStats(rounds_finished=4, errors=1, consecutive_errors=1)
    monitor = make_monitor(ledger, notifier)
    await monitor.run_once()
    reporter = Reporter(stats, notifier, monitor)

    health = await reporter.health_report()
    summary = await reporter.stats_report()

    assert health["status"] == "degraded"
    assert health["roundsFinished"] == 4
    assert health["balance"] == "1"
    assert summary["roundsFinished"] == 4
    assert notifier.names()[-2:] == [events.HEALTH_CHECK, events.STATS_REPORT]


class StubBeacon:
    def __init__(self, actual: str) -> None:
        self.actual = actual
        self.calls = []

    async def verify(self, block_number: int, expected_seed: str) -> bool:
        self.calls.append((block_number, expected_seed))
        return expected_seed == self.actual


async def test_auditor_verifies_stored_proof(store):
    await store.create_proof("7", block_number=1005, seed=SEED, timestamp=None, producer="bp")
    beacon = StubBeacon(SEED)

    result = await ProofAuditor(store, beacon).verify_round("7")

    assert result == {"roundId": "7", "blockNumber": 1005, "seed": SEED, "matches": True}
    assert beacon.calls == [(1005, SEED)]


async def test_auditor_reports_mismatch(store):
    await store.create_proof("8", block_number=10, seed=SEED, timestamp=None, producer=None)

    result = await ProofAuditor(store, StubBeacon("0x" + "00" * 32)).verify_round("8")

    assert result["matches"] is False


async def test_auditor_without_proof_raises(store):
    with pytest.raises(NotFoundError):
        await ProofAuditor(store, StubBeacon(SEED)).verify_round("missing")
