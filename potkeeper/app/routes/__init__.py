# -*- coding: utf-8 -*-
# potkeeper/app/routes/__init__.py
# =============================================================================
# HTTP-роуты PotKeeper: только операционная поверхность (status_routes).
# Подключение выполняет фабрика create_app().
# =============================================================================
