# -*- coding: utf-8 -*-
# potkeeper/app/integrations/ledger_api.py
# =============================================================================
# PotKeeper - шлюз леджера (контракт раундов через операторский релей)
# -----------------------------------------------------------------------------
# Назначение:
#   • Чтение состояния текущего раунда: id, фаза, startTime, банк, билеты,
#     участники.
#   • Изменяющие вызовы оператора: start / lock / cancel / finish(seed).
#   • Баланс кошелька оператора (для монитора баланса).
#
# Канон/инварианты:
#   • Леджер - источник истины о фазе. Шлюз ничего не кэширует.
#   • Все записи - fire-and-confirm: релей отвечает только после включения
#     транзакции в блок; ответ 2xx = транзакция подтверждена.
#   • 409/422 от релея - «леджер отклонил» (гонка/неверная фаза/revert):
#     LedgerRejectedError, безопасный no-op для оркестратора.
#   • Сетевые сбои и 5xx - LedgerError; повтор делает следующий тик.
#   • finish() повторно проверяет формат сида до отправки.
#
# Запреты:
#   • Никаких ретраев внутри шлюза: фаза леджера не сдвигается при сбое,
#     следующий тик сам повторит действие.
#   • Ключ релея не логируется.
# =============================================================================
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import httpx

from potkeeper.app.core.errors_core import LedgerError, LedgerRejectedError
from potkeeper.app.core.logging_core import get_logger
from potkeeper.app.core.system_locks import assert_seed_format
from potkeeper.app.core.utils_core import amount_str, decimal_from

logger = get_logger(__name__)

_REJECT_STATUSES = frozenset({409, 422})


@dataclass(slots=True)
class LedgerState:
    """Снимок раунда леджера (readState)."""

    round_id: str
    phase: int
    start_time: int
    total_amount: str
    ticket_count: int
    participant_count: int


@dataclass(slots=True)
class TxResult:
    """Подтверждённая транзакция оператора."""

    tx_hash: str
    block_number: Optional[int] = None


@dataclass(slots=True)
class FinishResult:
    """Результат finish(seed): транзакция и победитель, выбранный леджером."""

    tx: TxResult
    winner: Optional[str]


class LedgerGateway(Protocol):
    """Порт леджера: всё, что оркестратору нужно от контракта раундов."""

    async def read_state(self) -> LedgerState: ...

    async def start(self) -> TxResult: ...

    async def lock(self) -> TxResult: ...

    async def cancel(self) -> TxResult: ...

    async def finish(self, seed: str) -> FinishResult: ...

    async def operator_balance(self) -> Decimal: ...


def parse_state(payload: Dict[str, Any]) -> LedgerState:
    """JSON релея → LedgerState. Некорректный ответ - LedgerError."""
    try:
        return LedgerState(
            round_id=str(payload["roundId"]),
            phase=int(payload["phase"]),
            start_time=int(payload.get("startTime") or 0),
            total_amount=amount_str(payload.get("totalAmount")),
            ticket_count=int(payload.get("ticketCount") or 0),
            participant_count=int(payload.get("participantCount") or 0),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise LedgerError(
            "Malformed ledger state",
            details={"error": str(exc)},
        ) from None


def _parse_tx(payload: Dict[str, Any]) -> TxResult:
    tx_hash = payload.get("txHash")
    if not tx_hash:
        raise LedgerError("Ledger relay response has no txHash")
    block = payload.get("blockNumber")
    return TxResult(tx_hash=str(tx_hash), block_number=int(block) if block is not None else None)


class HttpLedgerGateway:
    """
    Шлюз леджера поверх HTTP-релея оператора.

    Релей держит ключ кошелька оператора, подписывает транзакции и ждёт
    их включения; PotKeeper не хранит ключей.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(method, url, json=body, headers=self._headers())
        except httpx.TransportError as exc:
            logger.warning(
                "Ledger relay request failed",
                extra={"path": path, "error": f"{type(exc).__name__}: {exc}"},
            )
            raise LedgerError(
                f"Ledger relay unreachable: {type(exc).__name__}",
                details={"path": path},
            ) from exc

        if response.status_code in _REJECT_STATUSES:
            reason = _error_reason(response)
            raise LedgerRejectedError(
                f"Ledger rejected {path}: {reason}",
                details={"path": path, "status": response.status_code, "reason": reason},
            )
        if response.status_code >= 400:
            raise LedgerError(
                f"Ledger relay returned HTTP {response.status_code}",
                details={"path": path, "status": response.status_code},
            )
        try:
            payload = response.json()
        except ValueError:
            raise LedgerError("Ledger relay returned invalid JSON", details={"path": path}) from None
        if not isinstance(payload, dict):
            raise LedgerError("Ledger relay returned unexpected payload", details={"path": path})
        return payload

    async def read_state(self) -> LedgerState:
        return parse_state(await self._request("GET", "/state"))

    async def start(self) -> TxResult:
        tx = _parse_tx(await self._request("POST", "/start"))
        logger.info("Round started on ledger", extra={"tx_hash": tx.tx_hash})
        return tx

    async def lock(self) -> TxResult:
        tx = _parse_tx(await self._request("POST", "/lock"))
        logger.info("Round locked on ledger", extra={"tx_hash": tx.tx_hash})
        return tx

    async def cancel(self) -> TxResult:
        tx = _parse_tx(await self._request("POST", "/cancel"))
        logger.info("Round cancelled on ledger", extra={"tx_hash": tx.tx_hash})
        return tx

    async def finish(self, seed: str) -> FinishResult:
        """Финализировать раунд сидом; победителя выбирает леджер."""
        assert_seed_format(seed)
        payload = await self._request("POST", "/finish", {"seed": seed})
        result = FinishResult(tx=_parse_tx(payload), winner=payload.get("winner"))
        logger.info(
            "Round finished on ledger",
            extra={"tx_hash": result.tx.tx_hash, "winner": result.winner},
        )
        return result

    async def operator_balance(self) -> Decimal:
        payload = await self._request("GET", "/operator/balance")
        try:
            return decimal_from(payload["balance"])
        except (KeyError, ValueError):
            raise LedgerError("Malformed operator balance response") from None


def _error_reason(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or "rejected"
    if isinstance(body, dict):
        return str(body.get("reason") or body.get("error") or "rejected")
    return "rejected"


__all__ = [
    "LedgerState",
    "TxResult",
    "FinishResult",
    "LedgerGateway",
    "HttpLedgerGateway",
    "parse_state",
]
