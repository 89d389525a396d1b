"""
Logging configuration shared by the Django process and Celery workers.

Every record carries the request id set by ``request_id.middleware.RequestIdMiddleware``
so a webhook delivery can be followed from ingestion through dispatch.
"""


def get_logger_config(level: str = "INFO") -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "request_id": {
                "()": "request_id.logging.RequestIdFilter",
            },
        },
        "formatters": {
            "verbose": {
                "format": "[{asctime}] {levelname} {name} [{request_id}] {message}",
                "style": "{",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
            "simple": {
                "format": "{levelname} {message}",
                "style": "{",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "verbose",
                "filters": ["request_id"],
            },
        },
        "root": {
            "handlers": ["console"],
            "level": level,
        },
        "loggers": {
            "django": {
                "handlers": ["console"],
                "level": level,
                "propagate": False,
            },
            "django.request": {
                "handlers": ["console"],
                "level": "ERROR",
                "propagate": False,
            },
            "celery": {
                "handlers": ["console"],
                "level": level,
                "propagate": False,
            },
            "prmanager": {
                "handlers": ["console"],
                "level": level,
                "propagate": False,
            },
        },
    }
