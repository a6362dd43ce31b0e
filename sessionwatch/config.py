from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Callable, Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError

load_dotenv()

DEFAULT_DB_URL = "sqlite:///./sessionwatch.db"

DATABASE_URL = os.getenv("DATABASE_URL", DEFAULT_DB_URL)

# Empty means "no Redis": per-client locks fall back to store leases.
REDIS_URL = os.getenv("REDIS_URL") or os.getenv("SESSIONWATCH_REDIS_URL") or ""


def _env_true(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "y", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass(frozen=True)
class PipelineSettings:
    """
    Knobs of the traffic pipeline.

    Durations are seconds. Values are not range-checked on construction;
    call validate() (the pipeline does) and treat ConfigurationError as
    "run as a pass-through".
    """

    block_duration: float = 60.0
    group_to_sessions: bool = True
    session_gap: float = 15.0
    max_requests_per_session: int = 180
    custom_ip_header: Optional[str] = None
    custom_segmenter: Optional[Callable[..., Any]] = None

    classifier_enabled: bool = False
    classifier_host: str = "localhost"
    classifier_port: int = 4000
    classifier_path: str = "/api"
    classifier_timeout: float = 5.0

    lookback: float = 600.0
    lock_wait: float = 5.0
    lock_ttl: float = 30.0

    @classmethod
    def from_env(cls, **overrides: Any) -> "PipelineSettings":
        values: dict[str, Any] = dict(
            block_duration=_env_float("SESSIONWATCH_BLOCK_DURATION", 60.0),
            group_to_sessions=_env_true("SESSIONWATCH_GROUP_TO_SESSIONS", "1"),
            session_gap=_env_float("SESSIONWATCH_SESSION_GAP", 15.0),
            max_requests_per_session=_env_int("SESSIONWATCH_MAX_REQUESTS_PER_SESSION", 180),
            custom_ip_header=os.getenv("SESSIONWATCH_CUSTOM_IP_HEADER") or None,
            classifier_enabled=_env_true("SESSIONWATCH_CLASSIFIER_ENABLED"),
            classifier_host=os.getenv("SESSIONWATCH_CLASSIFIER_HOST", "localhost"),
            classifier_port=_env_int("SESSIONWATCH_CLASSIFIER_PORT", 4000),
            classifier_path=os.getenv("SESSIONWATCH_CLASSIFIER_PATH", "/api"),
            classifier_timeout=_env_float("SESSIONWATCH_CLASSIFIER_TIMEOUT_SECONDS", 5.0),
            lookback=_env_float("SESSIONWATCH_LOOKBACK_SECONDS", 600.0),
            lock_wait=_env_float("SESSIONWATCH_LOCK_WAIT_SECONDS", 5.0),
            lock_ttl=_env_float("SESSIONWATCH_LOCK_TTL_SECONDS", 30.0),
        )
        values.update(overrides)
        return cls(**values)

    @property
    def classifier_url(self) -> str:
        path = self.classifier_path if self.classifier_path.startswith("/") else f"/{self.classifier_path}"
        return f"http://{self.classifier_host}:{int(self.classifier_port)}{path}"

    def validate(self) -> None:
        if self.classifier_enabled and not self.group_to_sessions:
            raise ConfigurationError("group_to_sessions must be true when the classifier is enabled")

        positives = {
            "block_duration": self.block_duration,
            "session_gap": self.session_gap,
            "max_requests_per_session": self.max_requests_per_session,
            "lookback": self.lookback,
            "lock_wait": self.lock_wait,
            "lock_ttl": self.lock_ttl,
            "classifier_timeout": self.classifier_timeout,
        }
        for name, value in positives.items():
            if value is None or value <= 0:
                raise ConfigurationError(f"{name} must be positive (got {value!r})")

        # A predecessor older than the lookback window is invisible to segmentation.
        if self.session_gap > self.lookback:
            raise ConfigurationError(
                f"session_gap ({self.session_gap}s) must not exceed lookback ({self.lookback}s)"
            )
