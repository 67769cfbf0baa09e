from __future__ import annotations

import time

import uvicorn
from loguru import logger

from .db import initialize_database
from .engine import build_services
from .logging_config import configure_logging
from .oracle import OpenAIOracle
from .scheduler import EngineScheduler
from .settings import settings
from .telegram_client import TelegramNotifier


def run_service() -> None:
    configure_logging(settings.log_level, settings.log_file)
    initialize_database()

    oracle = OpenAIOracle()
    notifier = TelegramNotifier()
    if not oracle.is_configured():
        logger.warning("OPENAI_API_KEY is not set; daily targets will use the fallback formula")
    if not notifier.is_configured():
        logger.warning("TELEGRAM_BOT_TOKEN is not set; signal notifications will fail until it is")

    services = build_services(oracle=oracle, notifier=notifier)

    scheduler = EngineScheduler(services)
    scheduler.start()

    logger.info("Accountability engine running (db: {})", settings.db_path)
    logger.info("Press Ctrl+C to stop")

    try:
        while True:
            time.sleep(settings.service_heartbeat_seconds)
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user")
        scheduler.stop()


def run_api() -> None:
    configure_logging(settings.log_level, settings.log_file)
    uvicorn.run(
        "accountability_engine.api:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run_service()
