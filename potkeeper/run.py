"""Application entry point for PotKeeper."""

from __future__ import annotations

import asyncio
import sys

import uvicorn

from potkeeper.app import create_app
from potkeeper.app.core.config_core import get_settings
from potkeeper.app.core.errors_core import ConfigError, StartupError
from potkeeper.app.core.logging_core import get_logger, setup_logging
from potkeeper.app.core.system_locks import validate_startup_config
from potkeeper.app.deps import build_container, startup_checks

logger = get_logger("potkeeper.run")


def main() -> None:
    """Validate configuration, reach beacon and ledger, then serve."""

    settings = get_settings()
    setup_logging(settings)

    try:
        validate_startup_config(settings)
        container = build_container(settings)
        asyncio.run(startup_checks(container))
    except (ConfigError, StartupError) as exc:
        logger.critical("Startup failed: %s", exc.message, extra={"details": exc.details})
        sys.exit(1)

    uvicorn.run(
        create_app(container),
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        log_config=None,
    )


if __name__ == "__main__":
    main()
