# -*- coding: utf-8 -*-
# potkeeper/app/crud/rounds_crud.py
# =============================================================================
# Назначение:
#   • CRUD-операции истории раундов: game_rounds и beacon_proofs.
#   • Только доступ к данным; решения о фазах принимает оркестратор.
#
# Канон/инварианты:
#   • Все записи ключуются round_id (идентификатор раунда леджера).
#   • upsert_round()/create_proof_if_absent() безопасно повторять: повтор
#     возвращает существующую строку, а не плодит дубли.
#   • mark_final_if_absent() выставляет final_recorded_at ровно один раз.
#   • beacon_proofs не обновляются.
#
# Запреты:
#   • Никаких commit() внутри CRUD - транзакцией управляет вызывающий слой.
# =============================================================================
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping

from sqlalchemy import Select, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from potkeeper.app.models import BeaconProof, GameRound

# Поля, которые разрешено менять через update_round()
ROUND_MUTABLE_FIELDS = frozenset(
    {
        "phase",
        "started_at",
        "locked_at",
        "finished_at",
        "total_amount",
        "ticket_count",
        "participant_count",
        "winner",
        "cancelled",
        "start_tx_hash",
        "lock_tx_hash",
        "finish_tx_hash",
        "cancel_tx_hash",
        "seed_block_number",
        "seed_block_hash",
        "seed_block_timestamp",
        "seed_producer",
    }
)


class RoundsCRUD:
    """CRUD-обёртка для раундов и доказательств сида."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_round(self, round_id: str) -> GameRound | None:
        """Получить раунд по идентификатору леджера."""

        stmt: Select[GameRound] = select(GameRound).where(GameRound.round_id == str(round_id))
        return await self.session.scalar(stmt)

    async def upsert_round(self, round_id: str, **fields: Any) -> GameRound:
        """
        Создать раунд, если его нет; иначе дополнить переданными полями.

        Повторный вызов с тем же round_id не создаёт вторую строку.
        """

        values = _clean_fields(fields)
        existing = await self.get_round(round_id)
        if existing is not None:
            for key, value in values.items():
                setattr(existing, key, value)
            await self.session.flush()
            return existing

        row = GameRound(round_id=str(round_id), **values)
        self.session.add(row)
        await self.session.flush()
        return row

    async def update_round(self, round_id: str, fields: Mapping[str, Any]) -> int:
        """Обновить поля раунда. Возвращает число затронутых строк (0 - раунда нет)."""

        values = _clean_fields(fields)
        if not values:
            return 0
        result = await self.session.execute(
            update(GameRound).where(GameRound.round_id == str(round_id)).values(**values)
        )
        return int(result.rowcount or 0)

    async def mark_final_if_absent(
        self,
        round_id: str,
        *,
        recorded_at: datetime,
        fields: Mapping[str, Any] | None = None,
    ) -> bool:
        """
        Зафиксировать итог раунда, если он ещё не зафиксирован.

        Условный UPDATE ... WHERE final_recorded_at IS NULL: две записи итога
        невозможны даже при гонке двух процессов. Отсутствующий раунд
        создаётся (процесс мог увидеть только Complete).

        Returns:
            True - итог записан сейчас; False - уже был записан ранее.
        """

        values = _clean_fields(fields or {})
        if await self.get_round(round_id) is None:
            row = GameRound(round_id=str(round_id), **values)
            self.session.add(row)
            await self.session.flush()

        result = await self.session.execute(
            update(GameRound)
            .where(
                GameRound.round_id == str(round_id),
                GameRound.final_recorded_at.is_(None),
            )
            .values(final_recorded_at=recorded_at, **values)
        )
        return int(result.rowcount or 0) == 1

    async def create_proof_if_absent(
        self,
        *,
        round_id: str,
        block_number: int,
        block_hash: str,
        block_timestamp: datetime | None,
        producer: str | None,
    ) -> tuple[BeaconProof, bool]:
        """
        Идемпотентно вставить доказательство сида.

        Returns:
            (proof, created) - created=False, если доказательство уже было.
        """

        existing = await self.get_proof(round_id)
        if existing is not None:
            return existing, False

        proof = BeaconProof(
            round_id=str(round_id),
            block_number=int(block_number),
            block_hash=block_hash,
            block_timestamp=block_timestamp,
            producer=producer,
        )
        self.session.add(proof)
        await self.session.flush()
        return proof, True

    async def get_proof(self, round_id: str) -> BeaconProof | None:
        stmt: Select[BeaconProof] = select(BeaconProof).where(BeaconProof.round_id == str(round_id))
        return await self.session.scalar(stmt)

    async def list_recent_rounds(self, *, limit: int = 20) -> list[GameRound]:
        """Последние раунды (created_at DESC, id DESC)."""

        stmt: Select[GameRound] = (
            select(GameRound)
            .order_by(GameRound.created_at.desc(), GameRound.id.desc())
            .limit(int(limit))
        )
        rows: Iterable[GameRound] = await self.session.scalars(stmt)
        return list(rows)


def _clean_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - ROUND_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"unknown round fields: {sorted(unknown)}")
    return dict(fields)


__all__ = ["RoundsCRUD", "ROUND_MUTABLE_FIELDS"]
