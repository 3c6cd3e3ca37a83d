# -*- coding: utf-8 -*-
# potkeeper/app/core/__init__.py
# =============================================================================
# Ядро PotKeeper: настройки, логирование, ошибки, «замки» и подключение к БД.
#
# Запреты:
# • Никаких побочных эффектов при импорте (логирование настраивает run.py).
# • Не импортируем сюда сервисы и интеграции.
# =============================================================================

from __future__ import annotations

from .config_core import Settings, get_settings
from .logging_core import get_logger, setup_logging

CORE_VERSION = "1.0.0"

__all__ = ["CORE_VERSION", "Settings", "get_settings", "get_logger", "setup_logging"]
