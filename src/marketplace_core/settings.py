from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    data_root: str = "data"
    retry_max_attempts: int = 3
    retry_base_delay_ms: int = 200
    retry_backoff_multiplier: float = 2.0
    retry_max_delay_ms: int = 5_000
    notification_lookback_days: int = 7
    payment_notifications_disabled: bool = False
    index_locking: bool = True

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            data_root=os.getenv("MARKETPLACE_DATA_ROOT", "data"),
            retry_max_attempts=_get_env_int("MARKETPLACE_RETRY_MAX_ATTEMPTS", default=3, minimum=1, maximum=20),
            retry_base_delay_ms=_get_env_int("MARKETPLACE_RETRY_BASE_DELAY_MS", default=200, minimum=0),
            retry_backoff_multiplier=_get_env_float("MARKETPLACE_RETRY_BACKOFF_MULTIPLIER", default=2.0, minimum=1.0),
            retry_max_delay_ms=_get_env_int("MARKETPLACE_RETRY_MAX_DELAY_MS", default=5_000, minimum=0),
            notification_lookback_days=_get_env_int(
                "MARKETPLACE_NOTIFICATION_LOOKBACK_DAYS", default=7, minimum=1, maximum=366
            ),
            payment_notifications_disabled=_get_env_bool("MARKETPLACE_PAYMENT_NOTIFICATIONS_DISABLED", default=False),
            index_locking=_get_env_bool("MARKETPLACE_INDEX_LOCKING", default=True),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        data_root = self.data_root.strip()
        if not data_root:
            raise ValueError("MARKETPLACE_DATA_ROOT must be non-empty")
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise ValueError(
                "MARKETPLACE_RETRY_MAX_DELAY_MS must be >= MARKETPLACE_RETRY_BASE_DELAY_MS, "
                f"got: {self.retry_max_delay_ms} < {self.retry_base_delay_ms}"
            )
        return RuntimeSettings(
            data_root=data_root,
            retry_max_attempts=self.retry_max_attempts,
            retry_base_delay_ms=self.retry_base_delay_ms,
            retry_backoff_multiplier=self.retry_backoff_multiplier,
            retry_max_delay_ms=self.retry_max_delay_ms,
            notification_lookback_days=self.notification_lookback_days,
            payment_notifications_disabled=self.payment_notifications_disabled,
            index_locking=self.index_locking,
        )

    def data_path(self, repo_root: Path) -> Path:
        path = Path(self.data_root)
        return path if path.is_absolute() else repo_root / path


def load_settings(repo_root: Path | None = None) -> RuntimeSettings:
    """Load ``<repo_root>/.env`` (if present) and then read settings from the environment.

    Variables already set in the process environment win over the ``.env`` file.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)
    return RuntimeSettings.from_env()


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 1_000.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
