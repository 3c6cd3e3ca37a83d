# -*- coding: utf-8 -*-
from __future__ import annotations

import logging

import pytest
from pydantic import ValidationError

from potkeeper.app.core.config_core import Settings
from potkeeper.app.core.errors_core import ConfigError, MalformedSeedError, normalize_exception
from potkeeper.app.core.logging_core import RedactingFilter
from potkeeper.app.core.system_locks import (
    SingleFlight,
    assert_seed_format,
    is_valid_seed,
    validate_startup_config,
)

from .conftest import SEED


def make_settings(**overrides) -> Settings:
    values = {
        "LEDGER_API_URL": "http://ledger.test",
        "DATABASE_URL": "postgres://pot:pw@db:5432/pot",
        "BEACON_RPC_ENDPOINTS": "http://beacon-a.test",
    }
    values.update(overrides)
    return Settings(**values)


# -----------------------------------------------------------------------------
# Settings
# -----------------------------------------------------------------------------
def test_endpoint_csv_is_normalised():
    settings = make_settings(
        BEACON_RPC_ENDPOINTS=" https://a.example/ ,https://b.example,https://a.example,"
    )
    assert settings.beacon_endpoints == ["https://a.example", "https://b.example"]


def test_database_url_uses_asyncpg():
    assert make_settings().database_url_async() == "postgresql+asyncpg://pot:pw@db:5432/pot"
    sqlite = "sqlite+aiosqlite:///./x.db"
    assert make_settings(DATABASE_URL=sqlite).database_url_async() == sqlite


def test_defaults_match_operational_policy():
    settings = make_settings()
    assert settings.GAME_TIMER_DURATION_SEC == 60
    assert settings.BEACON_FUTURE_BLOCKS == 5
    assert settings.BEACON_WAIT_TIMEOUT_SEC == 300
    assert settings.progress_thresholds == frozenset({30, 10, 5, 0})


@pytest.mark.parametrize(
    "field, value",
    [("GAME_CHECK_INTERVAL_SEC", 0), ("BEACON_FUTURE_BLOCKS", -1), ("GAME_PROGRESS_THRESHOLDS", "30,x")],
)
def test_invalid_values_rejected(field, value):
    with pytest.raises(ValidationError):
        make_settings(**{field: value})


def test_env_normalisation():
    assert make_settings(ENV="development").env_normalized == "dev"
    assert make_settings(ENV="LOCAL").env_normalized == "local"
    assert make_settings(ENV="staging").is_prod


def test_debug_dump_has_no_secrets():
    dump = make_settings(LEDGER_API_KEY="k-123", TELEGRAM_BOT_TOKEN="555:tok").debug_dump()
    assert "k-123" not in str(dump)
    assert "555:tok" not in str(dump)


# -----------------------------------------------------------------------------
# Стартовая проверка
# -----------------------------------------------------------------------------
def test_startup_config_ok():
    validate_startup_config(make_settings())


def test_startup_config_lists_missing_keys():
    with pytest.raises(ConfigError) as info:
        validate_startup_config(make_settings(LEDGER_API_URL=None, DATABASE_URL=None))
    assert info.value.details["missing"] == ["LEDGER_API_URL", "DATABASE_URL"]


def test_config_error_payload():
    status, payload = normalize_exception(ConfigError("bad", details={"missing": ["X"]}))
    assert status == 500
    assert payload == {"error": "config_error", "message": "bad", "details": {"missing": ["X"]}}


# -----------------------------------------------------------------------------
# Сид и SingleFlight
# -----------------------------------------------------------------------------
def test_seed_format():
    assert is_valid_seed(SEED)
    assert assert_seed_format(SEED) == SEED
    for bad in ("0x" + "AB" * 32, "ab" * 32, "0x" + "ab" * 31, None):
        assert not is_valid_seed(bad)
        with pytest.raises(MalformedSeedError):
            assert_seed_format(bad)


def test_single_flight_never_blocks():
    guard = SingleFlight("tick")
    assert guard.try_acquire() is True
    assert guard.try_acquire() is False
    assert guard.held and guard.dropped == 1
    guard.release()
    assert guard.try_acquire() is True


# -----------------------------------------------------------------------------
# Логи
# -----------------------------------------------------------------------------
def test_redacting_filter_masks_secrets():
    settings = make_settings(LEDGER_API_KEY="relay-key-42")
    record = logging.LogRecord(
        "potkeeper", logging.INFO, __file__, 1, "calling relay with %s", ("relay-key-42",), None
    )

    RedactingFilter(settings).filter(record)

    assert "relay-key-42" not in record.getMessage()
