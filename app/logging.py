import logging
from logging.config import dictConfig

from app.config import settings

_configured = False


def configure_logging() -> None:
    """Configure root logging once per process (API and Celery workers)."""
    global _configured
    if _configured:
        return
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "root": {"level": settings.log_level.upper(), "handlers": ["console"]},
            "loggers": {
                "sqlalchemy.engine": {"level": "WARNING"},
                "httpx": {"level": "WARNING"},
            },
        }
    )
    _configured = True
    logging.getLogger(__name__).debug("Logging configured at %s", settings.log_level)
