# -*- coding: utf-8 -*-
# potkeeper/app/services/__init__.py
# =============================================================================
# PotKeeper - сервисный слой
# -----------------------------------------------------------------------------
#   • round_orchestrator     - конечный автомат раунда (тик раз в секунду);
#   • rounds_store_service  - порт хранения истории раундов и доказательств;
#   • notifications_service - алерты админам (Telegram);
#   • scheduler_service     - периодический запуск задач;
#   • monitoring_service    - баланс оператора, отчёты, аудит сида.
#
# Модули импортируются напрямую (потребители берут нужный файл), чтобы
# импорт пакета не тянул за собой БД и HTTP-клиенты.
# =============================================================================
