"""
Logging helpers shared by every module.

Logging is configured once from ``LOG_LEVEL`` / ``LOG_FORMAT``; modules only
ever call ``get_logger(__name__)``.
"""
import logging
import logging.config

from app.core import config

_FORMATS = {
    "simple": "%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    "detailed": "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
    "json": '{"time":"%(asctime)s","level":"%(levelname)s","module":"%(name)s","message":"%(message)s"}',
}

# Third-party loggers that only report errors
_ERROR_ONLY = ["aiosqlite", "httpx", "httpcore", "asyncio"]

_configured = False


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Apply the logging configuration. Safe to call more than once."""
    global _configured

    level = (level or config.LOG_LEVEL).upper()
    format_string = _FORMATS.get(fmt or config.LOG_FORMAT, _FORMATS["simple"])

    logging_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": format_string,
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "default",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {
            "level": level,
            "handlers": ["console"],
        },
        "loggers": {
            name: {"level": "ERROR", "handlers": ["console"], "propagate": False}
            for name in _ERROR_ONLY
        },
    }
    logging.config.dictConfig(logging_config)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger, configuring logging on first use."""
    if not _configured:
        configure_logging()
    return logging.getLogger(name)
