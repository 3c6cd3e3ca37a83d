# -*- coding: utf-8 -*-
# tests/conftest.py
# =============================================================================
# Общие фикстуры: окружение до импорта пакета, in-memory фейки портов
# (леджер, маяк, хранилище, уведомления), SQLite-хранилище через aiosqlite.
# =============================================================================
from __future__ import annotations

import os

os.environ.setdefault("ENV", "dev")
os.environ.setdefault("LEDGER_API_URL", "http://ledger.test")
os.environ.setdefault("BEACON_RPC_ENDPOINTS", "http://beacon-a.test,http://beacon-b.test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./.pytest-potkeeper.db")

from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import pytest

from potkeeper.app.core.database_core import Base, create_engine, create_session_factory
from potkeeper.app.core.errors_core import LedgerRejectedError
from potkeeper.app.integrations.beacon_api import BeaconProofData
from potkeeper.app.integrations.ledger_api import FinishResult, LedgerState, TxResult
from potkeeper.app.services.rounds_store_service import SqlRoundStore

SEED = "0x" + "ab" * 32


# -----------------------------------------------------------------------------
# Фейки портов
# -----------------------------------------------------------------------------
class FakeLedger:
    """Леджер в памяти: фаза двигается только изменяющими вызовами."""

    def __init__(
        self,
        *,
        phase: int = 0,
        round_id: int = 0,
        start_time: int = 0,
        tickets: int = 0,
        clock_value: int = 0,
    ) -> None:
        self.phase = phase
        self.round_id = round_id
        self.start_time = start_time
        self.tickets = tickets
        self.participants = tickets
        self.total_amount = str(tickets * 10)
        self.clock_value = clock_value
        self.calls: List[Tuple[str, Any]] = []
        self.fail_next: Dict[str, BaseException] = {}
        self.balance = Decimal("1")
        self._tx = 0

    def _tx_result(self) -> TxResult:
        self._tx += 1
        return TxResult(tx_hash=f"0xtx{self._tx}", block_number=100 + self._tx)

    def _maybe_fail(self, name: str) -> None:
        exc = self.fail_next.pop(name, None)
        if exc is not None:
            raise exc

    @property
    def mutations(self) -> List[str]:
        return [name for name, _ in self.calls if name != "read_state"]

    async def read_state(self) -> LedgerState:
        self.calls.append(("read_state", None))
        self._maybe_fail("read_state")
        return LedgerState(
            round_id=str(self.round_id),
            phase=self.phase,
            start_time=self.start_time,
            total_amount=self.total_amount,
            ticket_count=self.tickets,
            participant_count=self.participants,
        )

    async def start(self) -> TxResult:
        self.calls.append(("start", None))
        self._maybe_fail("start")
        if self.phase != 0:
            raise LedgerRejectedError("not idle")
        self.round_id += 1
        self.phase = 1
        self.start_time = self.clock_value
        return self._tx_result()

    async def lock(self) -> TxResult:
        self.calls.append(("lock", None))
        self._maybe_fail("lock")
        if self.phase != 1:
            raise LedgerRejectedError("not betting")
        self.phase = 2
        return self._tx_result()

    async def cancel(self) -> TxResult:
        self.calls.append(("cancel", None))
        self._maybe_fail("cancel")
        if self.phase != 2:
            raise LedgerRejectedError("not locked")
        self.phase = 3
        return self._tx_result()

    async def finish(self, seed: str) -> FinishResult:
        self.calls.append(("finish", seed))
        self._maybe_fail("finish")
        if self.phase != 2:
            raise LedgerRejectedError("not locked")
        self.phase = 3
        return FinishResult(tx=self._tx_result(), winner="0xwinner")

    async def operator_balance(self) -> Decimal:
        self.calls.append(("operator_balance", None))
        self._maybe_fail("operator_balance")
        return self.balance


class FakeBeacon:
    """Маяк с предсказуемыми сидами; цели растут как у настоящего клиента."""

    def __init__(self, *, pointer: int = 1000) -> None:
        self.pointer = pointer
        self.requests: List[Tuple[int, Optional[float]]] = []
        self.fail_next: Optional[BaseException] = None
        self.seed = SEED

    async def future_seed(self, offset: Optional[int] = None, timeout: Optional[float] = None) -> BeaconProofData:
        self.requests.append((int(offset or 0), timeout))
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc
        return BeaconProofData(
            block_number=self.pointer + int(offset or 0),
            seed=self.seed,
            timestamp=None,
            producer="producer1",
        )


class FakeStore:
    """RoundStore в памяти с той же идемпотентностью, что у SqlRoundStore."""

    def __init__(self) -> None:
        self.rounds: Dict[str, Dict[str, Any]] = {}
        self.proofs: Dict[str, Dict[str, Any]] = {}
        self.finals: Dict[str, Dict[str, Any]] = {}
        self.fail: Optional[BaseException] = None

    def _check(self) -> None:
        if self.fail is not None:
            raise self.fail

    async def create_round(self, round_id: str, fields: Dict[str, Any]) -> None:
        self._check()
        self.rounds.setdefault(round_id, {}).update(fields)

    async def update_round(self, round_id: str, fields: Dict[str, Any]) -> None:
        self._check()
        self.rounds.setdefault(round_id, {}).update(fields)

    async def create_proof(self, round_id: str, *, block_number, seed, timestamp, producer) -> bool:
        self._check()
        if round_id in self.proofs:
            return False
        self.proofs[round_id] = {
            "roundId": round_id,
            "blockNumber": block_number,
            "blockHash": seed,
            "blockTimestamp": timestamp,
            "producer": producer,
        }
        return True

    async def record_final(self, round_id: str, fields: Dict[str, Any]) -> bool:
        self._check()
        if round_id in self.finals:
            return False
        self.finals[round_id] = dict(fields)
        return True

    async def get_proof(self, round_id: str) -> Optional[Dict[str, Any]]:
        self._check()
        return self.proofs.get(round_id)


class RecordingNotifier:
    """Подмена NotificationService: запоминает dispatch()/notify()."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def dispatch(self, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.events.append((event, dict(data or {})))

    async def notify(self, event: str, data: Optional[Dict[str, Any]] = None) -> bool:
        self.events.append((event, dict(data or {})))
        return False

    def names(self) -> List[str]:
        return [name for name, _ in self.events]


# -----------------------------------------------------------------------------
# Фикстуры
# -----------------------------------------------------------------------------
@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def beacon() -> FakeBeacon:
    return FakeBeacon()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'rounds.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def sql_store(session_factory) -> SqlRoundStore:
    return SqlRoundStore(session_factory)
