import logging
import logging.config

from .settings import config_settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configures root logging once for the whole service."""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "root": {
                "handlers": ["console"],
                "level": (level or config_settings.LOG_LEVEL).upper(),
            },
            # uvicorn installs its own handlers, keep them from double logging
            "loggers": {"uvicorn": {"propagate": False}},
        }
    )
