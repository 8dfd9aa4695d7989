# Logging configuration - rotating log file, optional console, alert hook for errors

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Optional

LOG_DIR = Path.cwd() / "logs"
LOG_FILE = LOG_DIR / "clover_connector.log"
LOG_MAX_BYTES = 5 * 1024 * 1024  # 5 MB
LOG_BACKUP_COUNT = 5
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# callback(message, level) for ERROR and above, e.g. to page someone when the terminal drops
_error_alert_callback: Optional[Callable[[str, str], None]] = None


def set_error_alert_callback(callback: Optional[Callable[[str, str], None]]):
    global _error_alert_callback
    _error_alert_callback = callback


class ErrorAlertHandler(logging.Handler):
    """Forwards ERROR and CRITICAL records to the alert callback."""

    def emit(self, record: logging.LogRecord):
        callback = _error_alert_callback
        if callback is None or record.levelno < logging.ERROR:
            return
        try:
            callback(self.format(record), record.levelname)
        except Exception:
            self.handleError(record)


def setup_logging(
    log_path: Optional[Path] = None,
    max_bytes: int = LOG_MAX_BYTES,
    backup_count: int = LOG_BACKUP_COUNT,
    console: bool = True,
    level: int = logging.INFO,
    wire_debug: bool = False,
) -> logging.Logger:
    """
    Configure the root logger for an application using the connector.

    wire_debug lowers clover_connector.connection to DEBUG so every
    envelope sent and received ends up in the log file.
    """
    log_path = Path(log_path or LOG_FILE)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    file_handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count,
                                       encoding="utf-8")
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    alert_handler = ErrorAlertHandler()
    alert_handler.setLevel(logging.ERROR)
    alert_handler.setFormatter(formatter)
    root.addHandler(alert_handler)

    if wire_debug:
        logging.getLogger("clover_connector.connection").setLevel(logging.DEBUG)
        # Root stays at its level; let the wire records through the handlers
        file_handler.setLevel(logging.DEBUG)
        root.setLevel(min(level, logging.DEBUG))

    return root
