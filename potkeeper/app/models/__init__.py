# -*- coding: utf-8 -*-
# potkeeper/app/models/__init__.py
# =============================================================================
# Назначение кода:
#   Единая точка входа слоя моделей: Base + все ORM-классы. Alembic
#   (migrations/env.py) импортирует этот пакет, чтобы metadata была полной.
#
# Запреты:
#   • Никаких create_all()/DDL при импорте.
# =============================================================================

from __future__ import annotations

from typing import List, Tuple

from ..core.database_core import Base
from .rounds_models import SCHEMA, BeaconProof, GameRound


def list_models() -> List[Tuple[str, str]]:
    """Пары (ClassName, __tablename__) всех моделей - для диагностики."""
    return sorted(
        (mapper.class_.__name__, mapper.class_.__tablename__)
        for mapper in Base.registry.mappers
    )


__all__ = ["Base", "SCHEMA", "GameRound", "BeaconProof", "list_models"]
