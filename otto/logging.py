"""Root logger setup for the CLI and the daemon.

Level and format come from ``logging.level`` / ``logging.format`` in
config.yaml or LOGGING_LEVEL / LOGGING_FORMAT. Only DEBUG, INFO, WARNING and
ERROR are recognised; anything else means INFO.

The daemon passes ``log_file`` and gets a size-rotated copy of everything
written to stderr.
"""

import logging
import logging.handlers
from pathlib import Path

from otto.config import LoggingConfig

LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Chatty at INFO/DEBUG; only shown when otto itself runs at DEBUG
NOISY_LOGGERS = ("urllib3", "requests")


def _resolve_level(level: str) -> int:
    return LEVELS.get(level.upper().strip(), logging.INFO)


class OttoLogging:
    """Applies LoggingConfig to the root logger."""

    def __init__(self, config: LoggingConfig, log_file: Path | None = None) -> None:
        self._level = _resolve_level(config.level)
        self._format = config.format or DEFAULT_FORMAT
        self._log_file = log_file
        self._max_bytes = config.file_max_bytes
        self._backups = config.file_backups

    def _file_handler(self) -> logging.Handler:
        self._log_file.parent.mkdir(parents=True, exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            self._log_file,
            maxBytes=self._max_bytes,
            backupCount=self._backups,
            encoding="utf-8",
        )

    def setup(self) -> None:
        """Replace root handlers with stderr (and the rotating log file, if set)."""
        handlers: list[logging.Handler] = [logging.StreamHandler()]
        if self._log_file is not None:
            handlers.append(self._file_handler())
        logging.basicConfig(level=self._level, format=self._format, handlers=handlers, force=True)

        third_party = logging.DEBUG if self._level == logging.DEBUG else logging.WARNING
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(third_party)
