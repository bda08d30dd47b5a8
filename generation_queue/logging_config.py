import os

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

JSON_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s %(message)s "
    "%(otelTraceID)s %(otelSpanID)s %(otelServiceName)s"
)


def build_logging_config(level=LOG_LEVEL):
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "fmt": JSON_FORMAT,
                "rename_fields": {"levelname": "level", "asctime": "timestamp"},
            },
        },
        "handlers": {
            "default": {
                "formatter": "json",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "": {"handlers": ["default"], "level": level, "propagate": True},
            "generation_queue": {"level": level, "propagate": True},
            # skipped runs while a generation is in flight are expected
            "apscheduler": {"level": "ERROR", "propagate": True},
            "uvicorn.error": {"handlers": ["default"], "level": level, "propagate": False},
            "uvicorn.access": {"handlers": ["default"], "level": level, "propagate": False},
        },
    }


LOGGING_CONFIG = build_logging_config()
