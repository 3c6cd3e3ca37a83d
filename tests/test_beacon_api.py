# -*- coding: utf-8 -*-
from __future__ import annotations

import asyncio
import json
from typing import Dict, List

import httpx
import pytest

from potkeeper.app.core.errors_core import (
    BeaconError,
    BeaconTimeout,
    BeaconUnavailableError,
    BlockNotFoundError,
    MalformedSeedError,
)
from potkeeper.app.integrations.beacon_api import BeaconClient, normalize_seed

PRIMARY = "http://beacon-a.test"
BACKUP = "http://beacon-b.test"
BLOCK_HASH = "0000f3a8" + "cd" * 28


class FakeClock:
    """monotonic-часы, которые двигает только sleep()."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeChain:
    """Antelope-узел: get_info и get_block; блок «появляется» по часам."""

    def __init__(self, clock: FakeClock, *, pointer: int = 1000) -> None:
        self.clock = clock
        self.pointer = pointer
        self.produced_at: Dict[int, float] = {}
        self.block_ids: Dict[int, str] = {}
        self.hits: List[str] = []
        self.down: set = set()
        self.missing_style = "unknown_block"

    def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        self.hits.append(host)
        if host in self.down:
            raise httpx.ConnectTimeout("timed out", request=request)

        if request.url.path == "/v1/chain/get_info":
            return httpx.Response(
                200,
                json={
                    "last_irreversible_block_num": self.pointer,
                    "head_block_num": self.pointer + 300,
                    "chain_id": "aca376f2",
                },
            )

        number = int(json.loads(request.content)["block_num_or_id"])
        ready_at = self.produced_at.get(number)
        if ready_at is None or self.clock.now < ready_at:
            if self.missing_style == "4xx":
                return httpx.Response(400, json={"message": "block not found"})
            return httpx.Response(
                500,
                json={"code": 500, "error": {"name": "unknown_block_exception", "what": "Unknown block"}},
            )
        return httpx.Response(
            200,
            json={
                "id": self.block_ids.get(number, BLOCK_HASH),
                "block_num": number,
                "timestamp": "2026-01-01T12:00:00.500",
                "producer": "eosnationftw",
            },
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def chain(clock) -> FakeChain:
    return FakeChain(clock)


def make_client(chain: FakeChain, clock: FakeClock, **kwargs) -> BeaconClient:
    kwargs.setdefault("poll_interval", 0.5)
    kwargs.setdefault("wait_timeout", 300.0)
    return BeaconClient(
        [PRIMARY, BACKUP],
        transport=httpx.MockTransport(chain.handler),
        clock=clock,
        sleeper=clock.sleep,
        **kwargs,
    )


# -----------------------------------------------------------------------------
# normalize_seed
# -----------------------------------------------------------------------------
def test_normalize_seed_adds_prefix_and_lowercases():
    assert normalize_seed("AB" * 32) == "0x" + "ab" * 32
    assert normalize_seed("0x" + "01" * 32) == "0x" + "01" * 32


@pytest.mark.parametrize("raw", ["", "0x1234", "zz" * 32, "0x" + "ab" * 33])
def test_normalize_seed_rejects_bad_values(raw):
    with pytest.raises(MalformedSeedError):
        normalize_seed(raw)


# -----------------------------------------------------------------------------
# future_seed
# -----------------------------------------------------------------------------
async def test_future_seed_waits_for_target_block(chain, clock):
    chain.produced_at[1005] = 2.3
    client = make_client(chain, clock)

    proof = await client.future_seed(5)

    assert proof.block_number == 1005
    assert proof.seed == "0x" + BLOCK_HASH
    assert proof.producer == "eosnationftw"
    assert proof.timestamp is not None and proof.timestamp.tzinfo is not None
    assert set(clock.sleeps) == {0.5}
    assert 2.3 <= clock.now <= 2.5 + 1e-9
    assert client.last_target == 1005


async def test_future_seed_treats_400_as_not_yet_produced(chain, clock):
    chain.missing_style = "4xx"
    chain.produced_at[1005] = 1.0
    client = make_client(chain, clock)

    proof = await client.future_seed(5)

    assert proof.block_number == 1005
    assert client.current_endpoint == PRIMARY


async def test_future_seed_rejects_non_positive_offset(chain, clock):
    client = make_client(chain, clock)
    with pytest.raises(ValueError):
        await client.future_seed(0)


async def test_timeout_then_retry_targets_higher_block(chain, clock):
    client = make_client(chain, clock, wait_timeout=3.0)

    with pytest.raises(BeaconTimeout):
        await client.future_seed(5)
    assert client.last_target == 1005

    # финальность не сдвинулась, но старая цель не переиспользуется
    chain.produced_at[1006] = 0.0
    proof = await client.future_seed(5)
    assert proof.block_number == 1006


async def test_targets_follow_finality_when_it_advances(chain, clock):
    chain.produced_at.update({1005: 0.0, 1025: 0.0})
    client = make_client(chain, clock)

    first = await client.future_seed(5)
    chain.pointer = 1020
    second = await client.future_seed(5)

    assert (first.block_number, second.block_number) == (1005, 1025)


async def test_malformed_block_hash_is_rejected(chain, clock):
    chain.produced_at[1005] = 0.0
    chain.block_ids[1005] = "not-a-hash"
    client = make_client(chain, clock)

    with pytest.raises(MalformedSeedError):
        await client.future_seed(5)


# -----------------------------------------------------------------------------
# Failover
# -----------------------------------------------------------------------------
async def test_failover_to_backup_and_stay_there(chain, clock):
    chain.down.add("beacon-a.test")
    chain.produced_at[1005] = 1.0
    client = make_client(chain, clock)

    proof = await client.future_seed(5)

    assert proof.block_number == 1005
    assert client.current_endpoint == BACKUP
    assert chain.hits.count("beacon-a.test") == 1


async def test_all_endpoints_down_raises_aggregate_error(chain, clock):
    chain.down.update({"beacon-a.test", "beacon-b.test"})
    client = make_client(chain, clock)

    with pytest.raises(BeaconUnavailableError) as info:
        await client.chain_info()

    assert "ConnectTimeout" in info.value.details["lastError"]
    assert chain.hits == ["beacon-a.test", "beacon-b.test"]


async def test_server_error_fails_over(clock):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "beacon-a.test":
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json={"last_irreversible_block_num": 42})

    client = BeaconClient(
        [PRIMARY, BACKUP],
        transport=httpx.MockTransport(handler),
        clock=clock,
        sleeper=clock.sleep,
    )
    info = await client.chain_info()

    assert info.finality_pointer == 42
    assert client.status()["currentEndpoint"] == BACKUP


async def test_bad_request_on_get_info_is_not_failover():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"message": "bad request"})

    client = BeaconClient([PRIMARY, BACKUP], transport=httpx.MockTransport(handler))

    with pytest.raises(BeaconError) as info:
        await client.chain_info()
    assert not isinstance(info.value, BeaconUnavailableError)
    assert client.current_endpoint == PRIMARY


@pytest.mark.parametrize("status", [401, 403, 404, 429])
async def test_other_client_errors_fail_over(status):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "beacon-a.test":
            return httpx.Response(status, json={"message": "nope"})
        return httpx.Response(200, json={"last_irreversible_block_num": 42})

    client = BeaconClient([PRIMARY, BACKUP], transport=httpx.MockTransport(handler))
    info = await client.chain_info()

    assert info.finality_pointer == 42
    assert client.current_endpoint == BACKUP


async def test_rate_limited_primary_fails_over_on_get_block(chain, clock):
    chain.produced_at[1005] = 0.0

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "beacon-a.test" and request.url.path == "/v1/chain/get_block":
            chain.hits.append("beacon-a.test")
            return httpx.Response(429, json={"message": "too many requests"})
        return chain.handler(request)

    client = BeaconClient(
        [PRIMARY, BACKUP],
        transport=httpx.MockTransport(handler),
        wait_timeout=5.0,
        clock=clock,
        sleeper=clock.sleep,
    )
    proof = await client.future_seed(5)

    assert proof.block_number == 1005
    assert client.current_endpoint == BACKUP
    assert clock.sleeps == []


async def test_wait_bound_covers_hanging_request():
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/chain/get_info":
            return httpx.Response(200, json={"last_irreversible_block_num": 1000})
        await asyncio.sleep(30)
        return httpx.Response(200, json={"id": BLOCK_HASH, "block_num": 1005})

    client = BeaconClient([PRIMARY], transport=httpx.MockTransport(handler), request_timeout=60.0)
    loop = asyncio.get_running_loop()
    started = loop.time()

    with pytest.raises(BeaconTimeout):
        await client.future_seed(5, timeout=0.05)
    assert loop.time() - started < 5


async def test_empty_get_info_raises_beacon_error(monkeypatch):
    client = BeaconClient([PRIMARY])

    async def empty(*args, **kwargs):
        return None

    monkeypatch.setattr(client, "_call", empty)

    with pytest.raises(BeaconError):
        await client.chain_info()


def test_client_requires_endpoints():
    with pytest.raises(ValueError):
        BeaconClient([])


# -----------------------------------------------------------------------------
# verify
# -----------------------------------------------------------------------------
async def test_verify_matches_case_insensitively(chain, clock):
    chain.produced_at[900] = 0.0
    chain.block_ids[900] = BLOCK_HASH.upper()
    client = make_client(chain, clock)

    assert await client.verify(900, "0x" + BLOCK_HASH) is True
    assert await client.verify(900, "0x" + "00" * 32) is False


async def test_verify_missing_block_raises(chain, clock):
    client = make_client(chain, clock)

    with pytest.raises(BlockNotFoundError):
        await client.verify(123456, "0x" + BLOCK_HASH)
