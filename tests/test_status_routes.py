# -*- coding: utf-8 -*-
from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from potkeeper.app import create_app
from potkeeper.app.core.config_core import Settings
from potkeeper.app.deps import build_container
from potkeeper.app.services.monitoring_service import ProofAuditor

from .conftest import SEED, FakeStore


class VerifyingBeacon:
    async def verify(self, block_number: int, expected_seed: str) -> bool:
        return block_number == 1005 and expected_seed == SEED


def _unused_transport() -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError(f"unexpected request to {request.url}")

    return httpx.MockTransport(handler)


@pytest.fixture
def container(tmp_path):
    settings = Settings(
        ENV="dev",
        APP_VERSION="9.9.9",
        LEDGER_API_URL="http://ledger.test",
        LEDGER_API_KEY="relay-secret",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'status.db'}",
        BEACON_RPC_ENDPOINTS="http://beacon-a.test/, http://beacon-b.test",
    )
    return build_container(
        settings,
        beacon_transport=_unused_transport(),
        ledger_transport=_unused_transport(),
        telegram_transport=_unused_transport(),
    )


@pytest.fixture
def client(container) -> TestClient:
    # без контекстного менеджера lifespan не запускается: планировщик не стартует
    return TestClient(create_app(container))


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": "9.9.9"}


def test_status_reports_components(client, container):
    container.orchestrator.stats.rounds_finished = 2

    body = client.get("/status").json()

    assert body["status"] == "healthy"
    assert body["busy"] is False
    assert body["stats"]["roundsFinished"] == 2
    assert {job["name"] for job in body["jobs"]} == {
        "round_tick",
        "balance_check",
        "health_report",
        "stats_report",
    }
    assert body["beacon"]["currentEndpoint"] == "http://beacon-a.test"
    assert body["notifications"]["enabled"] is False
    assert body["config"]["ledgerUrlSet"] == "yes"
    assert "relay-secret" not in str(body)


def test_status_degraded_after_errors(client, container):
    container.orchestrator.stats.consecutive_errors = 3

    assert client.get("/status").json()["status"] == "degraded"


def test_proof_verify(client, container):
    store = FakeStore()
    store.proofs["21"] = {"roundId": "21", "blockNumber": 1005, "blockHash": SEED}
    container.auditor = ProofAuditor(store, VerifyingBeacon())

    response = client.get("/rounds/21/proof/verify")

    assert response.status_code == 200
    assert response.json() == {"roundId": "21", "blockNumber": 1005, "seed": SEED, "matches": True}


def test_proof_verify_missing_round_is_404(client, container):
    container.auditor = ProofAuditor(FakeStore(), VerifyingBeacon())

    response = client.get("/rounds/404/proof/verify")

    assert response.status_code == 404
    assert response.json()["error"] == "not_found"
