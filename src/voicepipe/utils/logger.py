import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional


def get_log_dir() -> Path:
    from platformdirs import user_log_path

    log_dir = user_log_path("voicepipe", appauthor=False)
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


_logger_instance: Optional[logging.Logger] = None
# Only these are touched by shutdown_logging. Handlers attached by others stay.
_installed_handlers: List[logging.Handler] = []


def get_logger(name: str = "voicepipe") -> logging.Logger:
    global _logger_instance

    if _logger_instance is None:
        from ..core.settings.config import LOG_TO_CONSOLE, get_log_level

        root_logger = logging.getLogger("voicepipe")

        if not _installed_handlers:
            level = get_log_level()
            root_logger.setLevel(level)

            formatter = logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )

            log_file = get_log_dir() / "app.log"
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding="utf-8",
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            _installed_handlers.append(file_handler)

            if LOG_TO_CONSOLE:
                console_handler = logging.StreamHandler(sys.stderr)
                console_handler.setLevel(level)
                console_handler.setFormatter(formatter)
                _installed_handlers.append(console_handler)

            for handler in _installed_handlers:
                root_logger.addHandler(handler)
            root_logger.propagate = False

        _logger_instance = root_logger

    if name == "voicepipe":
        return _logger_instance

    return logging.getLogger(name)


def shutdown_logging() -> None:
    """Close the handlers installed by ``get_logger`` to release file locks."""
    global _logger_instance
    root_logger = logging.getLogger("voicepipe")
    for handler in _installed_handlers:
        handler.close()
        root_logger.removeHandler(handler)
    _installed_handlers.clear()
    _logger_instance = None
