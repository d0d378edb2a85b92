"""Runtime settings, read from SPLITLEDGER_* environment variables."""

import os
from pathlib import Path

from pydantic import BaseModel, Field

DEFAULT_STATE_DIR = Path.home() / ".splitledger"


class Settings(BaseModel):
    """Ledger settings. Every field has a working default."""

    state_dir: Path = DEFAULT_STATE_DIR
    lock_timeout_seconds: float = Field(default=5.0, gt=0)
    reminder_interval_hours: int = Field(default=24, gt=0)
    due_days: int = Field(default=7, ge=0)
    line_channel_token: str | None = None
    log_path: Path | None = None
    log_level: str = "INFO"
    rate_limit_requests: int = Field(default=100, gt=0)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)

    @property
    def audit_log_path(self) -> Path:
        """Audit log location, defaulting to a file inside the state dir."""
        return self.log_path or self.state_dir / "audit.jsonl"


# env var -> Settings field
ENV_FIELDS: dict[str, str] = {
    "SPLITLEDGER_STATE_DIR": "state_dir",
    "SPLITLEDGER_LOCK_TIMEOUT": "lock_timeout_seconds",
    "SPLITLEDGER_REMINDER_INTERVAL_HOURS": "reminder_interval_hours",
    "SPLITLEDGER_DUE_DAYS": "due_days",
    "SPLITLEDGER_LINE_TOKEN": "line_channel_token",
    "SPLITLEDGER_LOG_PATH": "log_path",
    "SPLITLEDGER_LOG_LEVEL": "log_level",
    "SPLITLEDGER_RATE_LIMIT": "rate_limit_requests",
    "SPLITLEDGER_RATE_WINDOW": "rate_limit_window_seconds",
}


def load_settings(**overrides: object) -> Settings:
    """
    Build Settings from the environment.

    Args:
        **overrides: Explicit values that win over the environment (None is ignored)

    Returns:
        Validated Settings
    """
    values: dict[str, object] = {}
    for env_name, field in ENV_FIELDS.items():
        env_value = os.environ.get(env_name)
        if env_value:
            values[field] = env_value
    values.update({k: v for k, v in overrides.items() if v is not None})
    return Settings.model_validate(values)
