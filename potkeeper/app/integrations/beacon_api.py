# -*- coding: utf-8 -*-
# potkeeper/app/integrations/beacon_api.py
# =============================================================================
# PotKeeper - клиент маяка случайности (Antelope-совместимая цепочка)
# -----------------------------------------------------------------------------
# Назначение:
#   • Превращает «блок из будущего» внешней цепочки в проверяемый сид:
#     указатель финальности + смещение → ждём появления блока → его хэш.
#   • Повторная проверка сида по номеру блока (аудит, не горячий путь).
#   • Отказоустойчивость: упорядоченный список RPC-эндпоинтов, переключение
#     по кругу при сетевых сбоях.
#
# Канон/инварианты:
#   • Сид всегда ^0x[0-9a-f]{64}$. Хэш без префикса дополняется "0x".
#   • Целевой блок строго растёт между вызовами future_seed(): повторная
#     попытка после таймаута никогда не ждёт старый (или меньший) блок.
#   • Эндпоинт «липкий»: пока работает, им и пользуемся; переключаемся только
#     при сбое (таймаут, обрыв соединения, 5xx, 4xx кроме 400).
#   • HTTP 400 или 5xx с unknown_block_exception на get_block - «блок ещё
#     не произведён», это не ошибка и не повод переключаться.
#
# ИИ-защиты/самовосстановление:
#   • Таймауты httpx на каждый запрос; опрос целиком ограничен жёстким
#     таймаутом (asyncio.wait_for), включая последний запрос.
#   • Часы и sleep внедряются (clock/sleeper) - тесты идут без реального ожидания.
#
# Запреты:
#   • Клиент не пишет в БД: доказательство сохраняет оркестратор.
#   • Никаких вызовов леджера отсюда.
# =============================================================================
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from potkeeper.app.core.errors_core import (
    BeaconError,
    BeaconTimeout,
    BeaconUnavailableError,
    BlockNotFoundError,
    MalformedSeedError,
)
from potkeeper.app.core.logging_core import get_logger
from potkeeper.app.core.system_locks import assert_seed_format
from potkeeper.app.core.utils_core import parse_chain_timestamp

logger = get_logger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[Any]]

GET_INFO_PATH = "/v1/chain/get_info"
GET_BLOCK_PATH = "/v1/chain/get_block"

# Antelope-узлы отвечают на запрос ещё не произведённого блока HTTP 500
# с этим именем ошибки - это тоже «блока пока нет».
_UNKNOWN_BLOCK_ERRORS = frozenset({"unknown_block_exception", "block_id_type_exception"})


@dataclass(slots=True)
class ChainInfo:
    """Ответ get_info: указатель финальности и голова цепочки."""

    finality_pointer: int
    head_block: int
    chain_id: str


@dataclass(slots=True)
class BeaconBlock:
    """Блок маяка в том виде, в каком его отдал узел (хэш ещё не нормализован)."""

    block_number: int
    block_id: str
    timestamp: Optional[datetime]
    producer: Optional[str]


@dataclass(slots=True)
class BeaconProofData:
    """Результат future_seed(): сид + данные для независимой проверки."""

    block_number: int
    seed: str
    timestamp: Optional[datetime]
    producer: Optional[str]


class _EndpointFailure(Exception):
    """Сбой уровня сети/сервера: повод переключить эндпоинт."""


def normalize_seed(raw: Any) -> str:
    """
    Приводит идентификатор блока к каноническому сиду.

    "ABC…" → "0xabc…"; "0xABC…" → "0xabc…". Если результат не 0x + 64 hex -
    MalformedSeedError.
    """
    if not isinstance(raw, str):
        raise MalformedSeedError(details={"seed": repr(raw)[:80]})
    value = raw.strip().lower()
    if not value.startswith("0x"):
        value = "0x" + value
    return assert_seed_format(value)


class BeaconClient:
    """
    Клиент маяка случайности с failover по эндпоинтам.

    Один экземпляр на процесс (создаётся в deps.build_container): состояние
    «текущий эндпоинт» и «последний целевой блок» живёт между вызовами.
    """

    def __init__(
        self,
        endpoints: Sequence[str],
        *,
        future_blocks: int = 5,
        poll_interval: float = 0.5,
        wait_timeout: float = 300.0,
        request_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = time.monotonic,
        sleeper: Sleeper = asyncio.sleep,
    ) -> None:
        self.endpoints: List[str] = [url.rstrip("/") for url in endpoints if url]
        if not self.endpoints:
            raise ValueError("BeaconClient requires at least one endpoint")
        self.future_blocks = int(future_blocks)
        self.poll_interval = float(poll_interval)
        self.wait_timeout = float(wait_timeout)
        self.request_timeout = float(request_timeout)
        self._transport = transport
        self._clock = clock
        self._sleep = sleeper
        self._index = 0
        self._last_target: Optional[int] = None

    # ------------------------------------------------------------------
    # Состояние
    # ------------------------------------------------------------------
    @property
    def current_endpoint(self) -> str:
        return self.endpoints[self._index]

    @property
    def last_target(self) -> Optional[int]:
        return self._last_target

    def _switch_endpoint(self) -> None:
        self._index = (self._index + 1) % len(self.endpoints)
        logger.warning(
            "Switching to next beacon endpoint",
            extra={"endpoint": self.current_endpoint},
        )

    def status(self) -> Dict[str, Any]:
        return {
            "currentEndpoint": self.current_endpoint,
            "endpoints": len(self.endpoints),
            "lastTarget": self._last_target,
        }

    # ------------------------------------------------------------------
    # Транспорт
    # ------------------------------------------------------------------
    async def _post_once(self, endpoint: str, path: str, body: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self.request_timeout,
            transport=self._transport,
        ) as client:
            return await client.post(
                f"{endpoint}{path}",
                json=body,
                headers={"Content-Type": "application/json"},
            )

    async def _call(
        self,
        path: str,
        body: Dict[str, Any],
        *,
        not_found_ok: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """
        POST на текущий эндпоинт с переключением по кругу.

        Каждый эндпоинт пробуется не больше одного раза за вызов. Если
        not_found_ok - ответ «блока нет» (400 / unknown_block) → None.
        Остальные 4xx (429, 404, 403...) - сбой эндпоинта, как и 5xx.
        """
        last_error = "no attempts"
        attempts = len(self.endpoints)
        for attempt in range(attempts):
            endpoint = self.current_endpoint
            try:
                response = await self._post_once(endpoint, path, body)
                if not_found_ok and _is_missing_block(response):
                    return None
                if response.status_code > 400:
                    raise _EndpointFailure(f"HTTP {response.status_code}")
                if response.status_code == 400:
                    raise BeaconError(
                        f"Beacon rejected {path}",
                        details={"endpoint": endpoint, "status": response.status_code},
                    )
                try:
                    payload = response.json()
                except ValueError:
                    raise _EndpointFailure("invalid JSON") from None
                if not isinstance(payload, dict):
                    raise _EndpointFailure("unexpected payload type")
                return payload
            except (httpx.TransportError, _EndpointFailure) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "Beacon RPC call failed",
                    extra={
                        "endpoint": endpoint,
                        "path": path,
                        "error": last_error,
                        "attempt": attempt + 1,
                    },
                )
                if attempt < attempts - 1:
                    self._switch_endpoint()

        raise BeaconUnavailableError(
            f"All {attempts} beacon endpoints failed. Last error: {last_error}",
            details={"path": path, "lastError": last_error},
        )

    # ------------------------------------------------------------------
    # Операции
    # ------------------------------------------------------------------
    async def chain_info(self) -> ChainInfo:
        """Указатель финальности (last_irreversible_block_num) текущей цепочки."""
        info = await self._call(GET_INFO_PATH, {})
        if info is None:
            raise BeaconError("Empty get_info response", details={"endpoint": self.current_endpoint})
        try:
            return ChainInfo(
                finality_pointer=int(info["last_irreversible_block_num"]),
                head_block=int(info.get("head_block_num") or 0),
                chain_id=str(info.get("chain_id") or ""),
            )
        except (KeyError, TypeError, ValueError):
            raise BeaconError(
                "Malformed get_info response",
                details={"endpoint": self.current_endpoint},
            ) from None

    async def get_block(self, number: int) -> Optional[BeaconBlock]:
        """Блок по номеру или None, если он ещё не произведён."""
        raw = await self._call(
            GET_BLOCK_PATH,
            {"block_num_or_id": int(number)},
            not_found_ok=True,
        )
        if raw is None:
            return None
        block_id = raw.get("id")
        if not block_id:
            raise BeaconError(
                "Block response has no id",
                details={"block": int(number), "endpoint": self.current_endpoint},
            )
        return BeaconBlock(
            block_number=int(raw.get("block_num") or number),
            block_id=str(block_id),
            timestamp=parse_chain_timestamp(raw.get("timestamp")),
            producer=raw.get("producer"),
        )

    async def wait_for_block(self, number: int, timeout: Optional[float] = None) -> BeaconBlock:
        """
        Опрашивает get_block с шагом poll_interval до появления блока.

        Raises:
            BeaconTimeout: блок не появился за timeout секунд.
            BeaconUnavailableError: все эндпоинты недоступны.
        """
        limit = self.wait_timeout if timeout is None else float(timeout)
        logger.info(
            "Waiting for beacon block",
            extra={"target_block": number, "max_wait_seconds": limit},
        )
        try:
            block = await asyncio.wait_for(self._poll_block(number, limit), timeout=limit)
        except asyncio.TimeoutError:
            block = None
        if block is None:
            raise BeaconTimeout(
                f"Timed out waiting for beacon block {number} after {limit:g} seconds",
                details={"targetBlock": number, "timeoutSec": limit},
            )
        return block

    async def _poll_block(self, number: int, limit: float) -> Optional[BeaconBlock]:
        # None - блок не появился за limit по часам клиента
        started = self._clock()
        while self._clock() - started < limit:
            block = await self.get_block(number)
            if block is not None:
                logger.info(
                    "Beacon block produced",
                    extra={
                        "block_num": block.block_number,
                        "wait_time_seconds": round(self._clock() - started, 3),
                    },
                )
                return block
            await self._sleep(self.poll_interval)
        return None

    async def future_seed(
        self,
        offset: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> BeaconProofData:
        """
        Сид из будущего блока: финальность + offset → ждём блок → хэш.

        Целевой блок никогда не меньше и не равен предыдущему запрошенному.
        """
        step = self.future_blocks if offset is None else int(offset)
        if step <= 0:
            raise ValueError("future block offset must be > 0")

        info = await self.chain_info()
        target = info.finality_pointer + step
        if self._last_target is not None and target <= self._last_target:
            target = self._last_target + 1
        self._last_target = target

        logger.info(
            "Target beacon block calculated",
            extra={
                "finality_pointer": info.finality_pointer,
                "target_block": target,
                "offset": step,
            },
        )

        block = await self.wait_for_block(target, timeout)
        seed = normalize_seed(block.block_id)

        logger.info(
            "Future beacon seed fetched",
            extra={"block_num": target, "seed": seed, "producer": block.producer},
        )
        return BeaconProofData(
            block_number=target,
            seed=seed,
            timestamp=block.timestamp,
            producer=block.producer,
        )

    async def verify(self, block_number: int, expected_seed: str) -> bool:
        """
        Повторно получает блок и сверяет его хэш с ожидаемым сидом.

        Raises:
            BlockNotFoundError: блок не найден ни на одном эндпоинте.
        """
        block = await self.get_block(block_number)
        if block is None:
            raise BlockNotFoundError(
                f"Block {block_number} not found",
                details={"block": block_number},
            )
        actual = "0x" + block.block_id.strip().lower().removeprefix("0x")
        expected = "0x" + (expected_seed or "").strip().lower().removeprefix("0x")
        matches = actual == expected
        logger.info(
            "Beacon seed verification",
            extra={
                "block_num": block_number,
                "expected": expected,
                "actual": actual,
                "matches": matches,
            },
        )
        return matches


def _is_missing_block(response: httpx.Response) -> bool:
    if response.status_code == 400:
        return True
    if response.status_code >= 500:
        try:
            body = response.json()
        except ValueError:
            return False
        error = body.get("error") if isinstance(body, dict) else None
        return isinstance(error, dict) and error.get("name") in _UNKNOWN_BLOCK_ERRORS
    return False


__all__ = [
    "ChainInfo",
    "BeaconBlock",
    "BeaconProofData",
    "BeaconClient",
    "normalize_seed",
]
# =============================================================================
# Пояснения «для чайника»:
#   • Почему блок «из будущего»: его хэш никто не знает заранее (даже мы),
#     но любой может потом запросить тот же блок и сверить хэш.
#   • Ошибка одного узла - не повод останавливать раунд: клиент пробует
#     следующий. Если упали все - BeaconUnavailableError, тик повторит позже.
# =============================================================================
