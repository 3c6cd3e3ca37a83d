# -*- coding: utf-8 -*-
"""Initial migration for PotKeeper: round history and beacon proofs.

Назначение:
    • Создать схему (если задана DB_SCHEMA) и таблицы game_rounds /
      beacon_proofs с ограничениями и индексами.

Канон/инварианты:
    • Колонки совпадают с ORM-моделями (potkeeper.app.models.rounds_models).
    • beacon_proofs.round_id UNIQUE - одно доказательство на раунд.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

from potkeeper.app.models import SCHEMA

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = True, server_default=None) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, server_default=server_default)


def upgrade() -> None:
    """Создать схему и таблицы истории раундов."""

    if SCHEMA:
        op.execute(sa.text(f'CREATE SCHEMA IF NOT EXISTS "{SCHEMA}"'))

    op.create_table(
        "game_rounds",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("round_id", sa.String(80), nullable=False),
        sa.Column("phase", sa.Integer(), nullable=False),
        _ts("started_at"),
        _ts("locked_at"),
        _ts("finished_at"),
        sa.Column("total_amount", sa.String(80), nullable=False),
        sa.Column("ticket_count", sa.Integer(), nullable=False),
        sa.Column("participant_count", sa.Integer(), nullable=False),
        sa.Column("winner", sa.String(128), nullable=True),
        sa.Column("cancelled", sa.Boolean(), nullable=False),
        sa.Column("start_tx_hash", sa.String(128), nullable=True),
        sa.Column("lock_tx_hash", sa.String(128), nullable=True),
        sa.Column("finish_tx_hash", sa.String(128), nullable=True),
        sa.Column("cancel_tx_hash", sa.String(128), nullable=True),
        sa.Column("seed_block_number", sa.BigInteger(), nullable=True),
        sa.Column("seed_block_hash", sa.String(66), nullable=True),
        _ts("seed_block_timestamp"),
        sa.Column("seed_producer", sa.String(64), nullable=True),
        _ts("final_recorded_at"),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("updated_at", nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("phase IN (0, 1, 2, 3)", name="ck_game_rounds_phase_valid"),
        sa.CheckConstraint("ticket_count >= 0", name="ck_game_rounds_ticket_count_nonneg"),
        sa.CheckConstraint("participant_count >= 0", name="ck_game_rounds_participant_count_nonneg"),
        sa.PrimaryKeyConstraint("id", name="pk_game_rounds"),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_game_rounds_round_id", "game_rounds", ["round_id"], unique=True, schema=SCHEMA
    )
    op.create_index(
        "ix_game_rounds_created_cursor", "game_rounds", ["created_at", "id"], schema=SCHEMA
    )

    op.create_table(
        "beacon_proofs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("round_id", sa.String(80), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_hash", sa.String(66), nullable=False),
        _ts("block_timestamp"),
        sa.Column("producer", sa.String(64), nullable=True),
        _ts("fetched_at", nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id", name="pk_beacon_proofs"),
        sa.UniqueConstraint("round_id", name="uq_beacon_proofs_round_id"),
        schema=SCHEMA,
    )
    op.create_index("ix_beacon_proofs_block", "beacon_proofs", ["block_number"], schema=SCHEMA)


def downgrade() -> None:
    """Удалить таблицы истории раундов."""

    op.drop_index("ix_beacon_proofs_block", table_name="beacon_proofs", schema=SCHEMA)
    op.drop_table("beacon_proofs", schema=SCHEMA)
    op.drop_index("ix_game_rounds_created_cursor", table_name="game_rounds", schema=SCHEMA)
    op.drop_index("ix_game_rounds_round_id", table_name="game_rounds", schema=SCHEMA)
    op.drop_table("game_rounds", schema=SCHEMA)
