import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name, default="false"):
    return os.getenv(name, default).strip().lower() == "true"


def _env_float(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    """Process-wide settings read from the environment (and .env)."""

    database_url: str
    credits_enabled: bool = False
    comfyui_api_url: str = ""
    comfyui_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 2.0
    estimated_seconds_per_request: float = 10.0
    log_level: str = "INFO"
    tracing_enabled: bool = True
    metrics_enabled: bool = True

    @classmethod
    def from_env(cls):
        database_url = os.getenv("DATABASE_URL", "")
        if not database_url:
            raise ValueError("DATABASE_URL env variable is not set")

        return cls(
            database_url=database_url,
            credits_enabled=_env_flag("CREDITS_SYSTEM_ENABLED"),
            comfyui_api_url=os.getenv("COMFYUI_API_URL", "").rstrip("/"),
            comfyui_timeout_seconds=_env_float("COMFYUI_TIMEOUT_SECONDS", 300.0),
            poll_interval_seconds=_env_float("QUEUE_POLL_INTERVAL_SECONDS", 2.0),
            estimated_seconds_per_request=_env_float("ESTIMATED_SECONDS_PER_REQUEST", 10.0),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            tracing_enabled=_env_flag("TRACING_ENABLED", "true"),
            metrics_enabled=_env_flag("METRICS_ENABLED", "true"),
        )
