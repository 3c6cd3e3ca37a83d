"""PotKeeper CRUD facade.

======================================================================
Назначение модуля:
    • Экспортировать CRUD-классы истории раундов (game_rounds, beacon_proofs).
    • Не содержит бизнес-логики - только доступ к БД.

Запреты:
    • Не добавлять здесь решения о фазах раунда и вызовы леджера.
======================================================================
"""

from potkeeper.app.crud.rounds_crud import ROUND_MUTABLE_FIELDS, RoundsCRUD

__all__ = ["RoundsCRUD", "ROUND_MUTABLE_FIELDS"]
