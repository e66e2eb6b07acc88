"""Service configuration loaded from environment variables."""

import os
from dataclasses import dataclass

DEFAULT_STEP_BUDGET = 10


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


@dataclass
class AgentSettings:
    """Configuration for the agent loop and its collaborators."""

    step_budget: int = DEFAULT_STEP_BUDGET
    model: str = "claude-3-5-sonnet-20241022"
    max_tokens: int = 1024
    temperature: float = 0.1
    max_message_chars: int = 4000  # Roughly 1000 tokens
    session_timeout_minutes: int = 60
    schedule_poll_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.step_budget < 1:
            raise ValueError("step_budget must be at least 1")

    @classmethod
    def from_env(cls) -> "AgentSettings":
        """Build settings from TOOLGATE_* environment variables."""
        return cls(
            step_budget=_env_int("TOOLGATE_STEP_BUDGET", DEFAULT_STEP_BUDGET),
            model=os.getenv("TOOLGATE_MODEL", cls.model),
            max_tokens=_env_int("TOOLGATE_MAX_TOKENS", cls.max_tokens),
            temperature=_env_float("TOOLGATE_TEMPERATURE", cls.temperature),
            max_message_chars=_env_int("TOOLGATE_MAX_MESSAGE_CHARS", cls.max_message_chars),
            session_timeout_minutes=_env_int("TOOLGATE_SESSION_TIMEOUT_MINUTES", cls.session_timeout_minutes),
            schedule_poll_seconds=_env_float("TOOLGATE_SCHEDULE_POLL_SECONDS", cls.schedule_poll_seconds),
        )


_settings: AgentSettings | None = None


def get_settings() -> AgentSettings:
    """Get or create the process-wide settings instance."""
    global _settings
    if _settings is None:
        _settings = AgentSettings.from_env()
    return _settings
