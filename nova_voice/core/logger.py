import json
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Final

from nova_voice.core.trace import get_request_id

if TYPE_CHECKING:  # pragma: no cover
    from nova_voice.config.settings import Settings

PACKAGE_LOGGER: Final[str] = "nova_voice"
CONSOLE_FORMAT: Final[str] = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Serialise log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "category": record.name,
            "message": record.getMessage(),
            "trace_id": get_request_id() or None,
        }
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, ensure_ascii=False)


class SizeAndTimeRotatingFileHandler(TimedRotatingFileHandler):
    """Rotate on whichever comes first: size limit or time interval."""

    def __init__(
        self,
        filename: str | Path,
        max_bytes: int = 0,
        backup_count: int = 0,
        when: str = "midnight",
        interval: int = 1,
        encoding: str | None = "utf-8",
        delay: bool = True,
    ) -> None:
        self.maxBytes = max_bytes
        super().__init__(
            str(filename),
            when=when,
            interval=interval,
            backupCount=backup_count,
            encoding=encoding,
            delay=delay,
        )

    def shouldRollover(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if self.maxBytes > 0:
            if self.stream is None:  # pragma: no cover
                self.stream = self._open()
            msg = f"{self.format(record)}\n"
            if (self.stream.tell() + len(msg.encode(self.encoding or "utf-8"))) >= self.maxBytes:
                return True
        return bool(super().shouldRollover(record))


def setup_logging(settings: "Settings") -> logging.Logger:
    """Attach the JSON file handler and a console handler to the package logger.

    Calling it again is a no-op, so the CLI and library users can both call it.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    if logger.handlers:  # avoid duplicates
        return logger

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logger.setLevel(level)

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt="%H:%M:%S"))
    console.setLevel(level)
    logger.addHandler(console)

    if settings.log_dir:
        log_dir = Path(settings.log_dir).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = SizeAndTimeRotatingFileHandler(
            log_dir / f"{PACKAGE_LOGGER}.jsonl",
            max_bytes=settings.log_rotate_mb * 1024 * 1024,
            backup_count=settings.log_retention_days,
        )
        handler.setFormatter(JsonFormatter())
        handler.setLevel(logging.DEBUG)
        logger.addHandler(handler)

    logger.propagate = False
    return logger


def reset_logging() -> None:
    """Detach every handler installed by :func:`setup_logging`."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
