# -*- coding: utf-8 -*-
# potkeeper/app/integrations/__init__.py
# Внешние системы: маяк случайности (beacon_api) и шлюз леджера (ledger_api).
