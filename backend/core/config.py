from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BACKEND_ROOT = Path(__file__).resolve().parents[1]

FAILURE_POLICIES = ("ask", "continue", "abort")


class Settings(BaseSettings):
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"
    enable_http_logging: bool = True
    log_file: Optional[str] = None

    upstream_base_url: str = "http://127.0.0.1:8080"
    generate_path: str = "/api/novel-craft/{novel_id}/write-chapter-stream"
    create_unit_path: str = "/api/novels/{novel_id}/chapters"
    unit_status_path: str = "/api/novels/{novel_id}/chapters/{unit_number}"
    save_unit_path: str = "/api/novels/{novel_id}/chapters/{unit_number}"
    novel_id: str = ""
    auth_token: Optional[str] = None
    connect_timeout_s: float = 10.0
    read_timeout_s: float = 300.0

    poll_interval_s: float = 0.5
    grace_period_s: float = 2.0
    unit_ready_timeout_s: float = 120.0
    default_total_cycles: int = 10
    failure_policy: str = "ask"
    realtime_preview_enabled: bool = False

    model_config = SettingsConfigDict(
        extra="ignore",
        env_file=str(BACKEND_ROOT / ".env"),
        env_file_encoding="utf-8",
    )

    @field_validator("poll_interval_s", mode="before")
    @classmethod
    def _clamp_poll_interval(cls, value):
        return _clamp_float(value, 0.5, 0.01, 60.0)

    @field_validator("grace_period_s", mode="before")
    @classmethod
    def _clamp_grace_period(cls, value):
        return _clamp_float(value, 2.0, 0.0, 60.0)

    @field_validator("connect_timeout_s", "read_timeout_s", "unit_ready_timeout_s", mode="before")
    @classmethod
    def _clamp_timeouts(cls, value, info):
        fallback = cls.model_fields[info.field_name].default
        return _clamp_float(value, fallback, 0.1, 3600.0)

    @field_validator("default_total_cycles", mode="before")
    @classmethod
    def _clamp_total_cycles(cls, value):
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            return 10
        return min(max(parsed, 1), 100)

    @field_validator("failure_policy", mode="before")
    @classmethod
    def _normalize_policy(cls, value):
        policy = str(value or "").strip().lower()
        return policy if policy in FAILURE_POLICIES else "ask"


def _clamp_float(value, fallback: float, low: float, high: float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return fallback
    if parsed != parsed:  # NaN
        return fallback
    return min(max(parsed, low), high)


def get_settings() -> Settings:
    return Settings()
