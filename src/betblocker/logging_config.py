import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"


def setup_logging(
    log_path: Path | None,
    level: str = "INFO",
    foreground: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
) -> None:
    """Configure the root logger: rotating file plus stderr in the foreground."""
    handlers: list[logging.Handler] = []
    formatter = logging.Formatter(LOG_FORMAT)

    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=3)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if foreground or not handlers:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        handlers.append(stream_handler)

    log_level = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(level=log_level, handlers=handlers, force=True)
    # Keep per-request httpx lines out of INFO logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
