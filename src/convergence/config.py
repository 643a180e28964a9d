"""Configuration management with validation.

Bounds are enforced at configuration load time so that a misconfigured
engine fails before it touches any provider.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class PlacementPolicy(str, Enum):
    """How expanded compute instances are distributed over placement targets."""

    SINGLE = "single"  # Every instance pinned to the first placement entry
    SPREAD = "spread"  # Round-robin across all placement entries


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_STATE_PATH = "convergence.state.json"

DEFAULT_MAX_WORKERS = 4
MIN_MAX_WORKERS = 1
MAX_MAX_WORKERS = 64

DEFAULT_MAX_APPLY_ATTEMPTS = 4
MAX_APPLY_ATTEMPTS_CEILING = 10
RETRY_BACKOFF_BASE_SECONDS = 2.0
RETRY_BACKOFF_MAX_SECONDS = 60.0

DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS = 10
MIN_HEALTH_CHECK_INTERVAL_SECONDS = 1
MAX_HEALTH_CHECK_INTERVAL_SECONDS = 300

DEFAULT_HEALTHY_THRESHOLD = 3
DEFAULT_UNHEALTHY_THRESHOLD = 2
MAX_THRESHOLD = 10

DEFAULT_DEREGISTRATION_DELAY_SECONDS = 0
MAX_DEREGISTRATION_DELAY_SECONDS = 3600

# File limits
MAX_TOPOLOGY_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max topology file
MAX_EXPANDED_INSTANCES = 500  # Upper bound for a single count/for_each declaration


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    # Persistence
    state_path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_PATH))
    plan_audit_dir: Path | None = None

    # Executor
    max_workers: int = DEFAULT_MAX_WORKERS
    max_apply_attempts: int = DEFAULT_MAX_APPLY_ATTEMPTS
    retry_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    retry_backoff_max_seconds: float = RETRY_BACKOFF_MAX_SECONDS
    verify_before_mutate: bool = True

    # Attachment controller
    health_check_interval_seconds: int = DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS
    healthy_threshold: int = DEFAULT_HEALTHY_THRESHOLD
    unhealthy_threshold: int = DEFAULT_UNHEALTHY_THRESHOLD
    deregistration_delay_seconds: int = DEFAULT_DEREGISTRATION_DELAY_SECONDS

    # Graph building
    placement_policy: PlacementPolicy = PlacementPolicy.SPREAD

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        All errors are collected and reported together.
        """
        errors: list[str] = []

        if not (MIN_MAX_WORKERS <= self.max_workers <= MAX_MAX_WORKERS):
            errors.append(
                f"MAX_WORKERS must be between {MIN_MAX_WORKERS} and {MAX_MAX_WORKERS}"
            )

        if not (1 <= self.max_apply_attempts <= MAX_APPLY_ATTEMPTS_CEILING):
            errors.append(
                f"MAX_APPLY_ATTEMPTS must be between 1 and {MAX_APPLY_ATTEMPTS_CEILING}"
            )

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS cannot be negative")

        if self.retry_backoff_max_seconds < self.retry_backoff_base_seconds:
            errors.append("RETRY_BACKOFF_MAX_SECONDS must be >= RETRY_BACKOFF_BASE_SECONDS")

        if not (
            MIN_HEALTH_CHECK_INTERVAL_SECONDS
            <= self.health_check_interval_seconds
            <= MAX_HEALTH_CHECK_INTERVAL_SECONDS
        ):
            errors.append(
                f"HEALTH_CHECK_INTERVAL must be between {MIN_HEALTH_CHECK_INTERVAL_SECONDS} "
                f"and {MAX_HEALTH_CHECK_INTERVAL_SECONDS} seconds"
            )

        for name, value in (
            ("HEALTHY_THRESHOLD", self.healthy_threshold),
            ("UNHEALTHY_THRESHOLD", self.unhealthy_threshold),
        ):
            if not (1 <= value <= MAX_THRESHOLD):
                errors.append(f"{name} must be between 1 and {MAX_THRESHOLD}")

        if not (0 <= self.deregistration_delay_seconds <= MAX_DEREGISTRATION_DELAY_SECONDS):
            errors.append(
                f"DEREGISTRATION_DELAY must be between 0 and "
                f"{MAX_DEREGISTRATION_DELAY_SECONDS} seconds"
            )

        if self.state_path.exists() and self.state_path.is_dir():
            errors.append(f"STATE_PATH points to a directory: {self.state_path}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            STATE_PATH: Path of the JSON state file (default: convergence.state.json)
            PLAN_AUDIT_DIR: If set, every computed plan is saved here as JSON
            MAX_WORKERS: Concurrent provider operations (default: 4)
            MAX_APPLY_ATTEMPTS: Attempts per node on transient errors (default: 4)
            RETRY_BACKOFF_BASE_SECONDS: First backoff delay (default: 2)
            RETRY_BACKOFF_MAX_SECONDS: Backoff ceiling (default: 60)
            VERIFY_BEFORE_MUTATE: Read live state before update/delete (default: true)
            HEALTH_CHECK_INTERVAL: Seconds between health probes (default: 10)
            HEALTHY_THRESHOLD: Consecutive passes to become healthy (default: 3)
            UNHEALTHY_THRESHOLD: Consecutive failures to become unhealthy (default: 2)
            DEREGISTRATION_DELAY: Seconds a removed target stays draining (default: 0)
            PLACEMENT_POLICY: One of single, spread (default: spread)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_policy(value: str | None) -> PlacementPolicy:
            if not value:
                return PlacementPolicy.SPREAD
            try:
                return PlacementPolicy(value.lower())
            except ValueError as e:
                valid = [p.value for p in PlacementPolicy]
                raise ConfigurationError(f"PLACEMENT_POLICY must be one of {valid}: {value}") from e

        audit_dir = os.environ.get("PLAN_AUDIT_DIR")

        return cls(
            state_path=Path(os.environ.get("STATE_PATH", DEFAULT_STATE_PATH)),
            plan_audit_dir=Path(audit_dir) if audit_dir else None,
            max_workers=get_int("MAX_WORKERS", DEFAULT_MAX_WORKERS),
            max_apply_attempts=get_int("MAX_APPLY_ATTEMPTS", DEFAULT_MAX_APPLY_ATTEMPTS),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE_SECONDS", RETRY_BACKOFF_BASE_SECONDS
            ),
            retry_backoff_max_seconds=get_float(
                "RETRY_BACKOFF_MAX_SECONDS", RETRY_BACKOFF_MAX_SECONDS
            ),
            verify_before_mutate=get_bool("VERIFY_BEFORE_MUTATE", True),
            health_check_interval_seconds=get_int(
                "HEALTH_CHECK_INTERVAL", DEFAULT_HEALTH_CHECK_INTERVAL_SECONDS
            ),
            healthy_threshold=get_int("HEALTHY_THRESHOLD", DEFAULT_HEALTHY_THRESHOLD),
            unhealthy_threshold=get_int("UNHEALTHY_THRESHOLD", DEFAULT_UNHEALTHY_THRESHOLD),
            deregistration_delay_seconds=get_int(
                "DEREGISTRATION_DELAY", DEFAULT_DEREGISTRATION_DELAY_SECONDS
            ),
            placement_policy=get_policy(os.environ.get("PLACEMENT_POLICY")),
        )
