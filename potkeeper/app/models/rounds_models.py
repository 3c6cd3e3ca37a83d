# -*- coding: utf-8 -*-
# potkeeper/app/models/rounds_models.py
# =============================================================================
# Назначение кода:
#   SQLAlchemy-модели истории раундов: зеркало раунда леджера (GameRound) и
#   доказательство случайности (BeaconProof) для независимой проверки.
#
# Канон/инварианты:
#   • Фаза в game_rounds - только зеркало леджера, не источник истины.
#   • Сумма банка хранится строкой-Decimal: леджер отдаёт целые минимальные
#     единицы, которые не помещаются в Numeric(30, 8) без потерь.
#   • Один раунд - одна строка (round_id UNIQUE), одно доказательство.
#   • final_recorded_at выставляется ровно один раз (итог раунда).
#   • beacon_proofs - insert-only: строку не обновляют и не удаляют.
#
# Запреты:
#   • Никакой логики выбора победителя - её выполняет леджер.
# =============================================================================

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..core.config_core import get_settings
from ..core.database_core import Base

_settings = get_settings()
SCHEMA: Optional[str] = _settings.DB_SCHEMA or None

# Фазы раунда леджера: 0=Idle, 1=Betting, 2=Locked, 3=Complete
PHASE_VALUES = (0, 1, 2, 3)


class GameRound(Base):
    """
    Раунд леджера глазами оркестратора.

    Строка создаётся при старте раунда (или при первом наблюдении Betting
    после рестарта) и дополняется по мере смены фаз.
    """

    __tablename__ = "game_rounds"
    __table_args__ = (
        CheckConstraint("phase IN (0, 1, 2, 3)", name="phase_valid"),
        CheckConstraint("ticket_count >= 0", name="ticket_count_nonneg"),
        CheckConstraint("participant_count >= 0", name="participant_count_nonneg"),
        Index("ix_game_rounds_created_cursor", "created_at", "id"),
        {"schema": SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    round_id: Mapped[str] = mapped_column(String(80), nullable=False, unique=True, index=True)
    phase: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    total_amount: Mapped[str] = mapped_column(String(80), nullable=False, default="0")
    ticket_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    participant_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    winner: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    start_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    lock_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    finish_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    cancel_tx_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Доказательство сида (дублируется из beacon_proofs для витрин)
    seed_block_number: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    seed_block_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    seed_block_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    seed_producer: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    final_recorded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )


class BeaconProof(Base):
    """Доказательство сида: блок маяка, чей хэш ушёл в finish()."""

    __tablename__ = "beacon_proofs"
    __table_args__ = (
        Index("ix_beacon_proofs_block", "block_number"),
        {"schema": SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    round_id: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    block_timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    producer: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


__all__ = ["SCHEMA", "PHASE_VALUES", "GameRound", "BeaconProof"]
