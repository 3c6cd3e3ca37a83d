# -*- coding: utf-8 -*-
# potkeeper/app/services/rounds_store_service.py
# =============================================================================
# Назначение кода:
#   Порт хранения истории раундов (Persistence Port) и его SQL-реализация.
#   Оркестратор знает только протокол RoundStore; SqlRoundStore живёт поверх
#   RoundsCRUD и открывает одну транзакцию на вызов.
#
# Канон/инварианты:
#   • Все операции - идемпотентные upsert'ы по round_id.
#   • record_final() возвращает True ровно один раз на раунд.
#   • create_proof() не перезаписывает существующее доказательство.
#
# Запреты:
#   • Никаких вызовов леджера/маяка.
#   • Ошибки БД не глотаются здесь - решение (лог и продолжить) принимает
#     оркестратор.
# =============================================================================

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from potkeeper.app.core.logging_core import get_logger
from potkeeper.app.core.utils_core import iso, utc_now
from potkeeper.app.crud.rounds_crud import RoundsCRUD
from potkeeper.app.models import BeaconProof, GameRound

logger = get_logger(__name__)


class RoundStore(Protocol):
    """Порт хранения: всё, что оркестратору нужно от БД."""

    async def create_round(self, round_id: str, fields: Mapping[str, Any]) -> None: ...

    async def update_round(self, round_id: str, fields: Mapping[str, Any]) -> None: ...

    async def create_proof(
        self,
        round_id: str,
        *,
        block_number: int,
        seed: str,
        timestamp: Optional[datetime],
        producer: Optional[str],
    ) -> bool: ...

    async def record_final(self, round_id: str, fields: Mapping[str, Any]) -> bool: ...

    async def get_proof(self, round_id: str) -> Optional[Dict[str, Any]]: ...


def proof_to_dict(proof: BeaconProof) -> Dict[str, Any]:
    return {
        "roundId": proof.round_id,
        "blockNumber": int(proof.block_number),
        "blockHash": proof.block_hash,
        "blockTimestamp": iso(proof.block_timestamp),
        "producer": proof.producer,
        "fetchedAt": iso(proof.fetched_at),
    }


def round_to_dict(row: GameRound) -> Dict[str, Any]:
    return {
        "roundId": row.round_id,
        "phase": row.phase,
        "startedAt": iso(row.started_at),
        "lockedAt": iso(row.locked_at),
        "finishedAt": iso(row.finished_at),
        "totalAmount": row.total_amount,
        "ticketCount": row.ticket_count,
        "participantCount": row.participant_count,
        "winner": row.winner,
        "cancelled": row.cancelled,
        "seedBlockNumber": row.seed_block_number,
        "seedBlockHash": row.seed_block_hash,
        "finalRecordedAt": iso(row.final_recorded_at),
    }


class SqlRoundStore:
    """RoundStore поверх SQLAlchemy: одна сессия и одна транзакция на вызов."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_round(self, round_id: str, fields: Mapping[str, Any]) -> None:
        async with self._session_factory() as session, session.begin():
            await RoundsCRUD(session).upsert_round(round_id, **dict(fields))
        logger.debug("Round record upserted", extra={"round_id": round_id})

    async def update_round(self, round_id: str, fields: Mapping[str, Any]) -> None:
        async with self._session_factory() as session, session.begin():
            crud = RoundsCRUD(session)
            updated = await crud.update_round(round_id, fields)
            if not updated:
                # Процесс мог пропустить старт раунда (рестарт) - создаём строку.
                await crud.upsert_round(round_id, **dict(fields))

    async def create_proof(
        self,
        round_id: str,
        *,
        block_number: int,
        seed: str,
        timestamp: Optional[datetime],
        producer: Optional[str],
    ) -> bool:
        async with self._session_factory() as session, session.begin():
            _, created = await RoundsCRUD(session).create_proof_if_absent(
                round_id=round_id,
                block_number=block_number,
                block_hash=seed,
                block_timestamp=timestamp,
                producer=producer,
            )
        if not created:
            logger.info("Beacon proof already stored", extra={"round_id": round_id})
        return created

    async def record_final(self, round_id: str, fields: Mapping[str, Any]) -> bool:
        async with self._session_factory() as session, session.begin():
            return await RoundsCRUD(session).mark_final_if_absent(
                round_id,
                recorded_at=utc_now(),
                fields=fields,
            )

    async def get_proof(self, round_id: str) -> Optional[Dict[str, Any]]:
        async with self._session_factory() as session:
            proof = await RoundsCRUD(session).get_proof(round_id)
            return proof_to_dict(proof) if proof is not None else None

    async def recent_rounds(self, limit: int = 20) -> List[Dict[str, Any]]:
        async with self._session_factory() as session:
            rows = await RoundsCRUD(session).list_recent_rounds(limit=limit)
            return [round_to_dict(row) for row in rows]


__all__ = ["RoundStore", "SqlRoundStore", "proof_to_dict", "round_to_dict"]
