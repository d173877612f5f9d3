import logging
import os
from logging.config import dictConfig

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging() -> None:
    """Configure process logging from LESSON_LOG_LEVEL / LESSON_DEBUG_HTTP."""
    level = os.getenv("LESSON_LOG_LEVEL", "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": DEFAULT_LOG_FORMAT,
                },
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "root": {
                "handlers": ["default"],
                "level": level,
            },
            "loggers": {
                "lesson_engine": {"level": level},
            },
        }
    )

    if os.getenv("LESSON_DEBUG_HTTP", "0") == "1":
        for name in ("httpx", "openai", "uvicorn.access"):
            logging.getLogger(name).setLevel(logging.DEBUG)
