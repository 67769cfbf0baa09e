import sys
from pathlib import Path

from loguru import logger


LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}"


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    logger.remove()
    logger.add(sys.stdout, level=level.upper(), format=LOG_FORMAT, enqueue=True)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        # Scheduler ticks run all day; keep a bounded history on disk.
        logger.add(
            log_file,
            level=level.upper(),
            format=LOG_FORMAT,
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )
