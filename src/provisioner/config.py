"""Runtime configuration with validation.

The deployment itself (names, images, prefixes) lives in the YAML file
described by models.DeploymentSpec. This module only holds how the
provisioner runs: where the file is, how long to wait for eventually
consistent dependencies and how to log.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .polling import PollPolicy


class LogFormat(str, Enum):
    """Supported log output formats."""

    JSON = "json"
    TEXT = "text"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_SPEC_PATH = "deployment.yaml"

DEFAULT_PRINCIPAL_WAIT_SECONDS = 300
DEFAULT_PROVIDER_WAIT_SECONDS = 600
MAX_WAIT_SECONDS = 3600

DEFAULT_POLL_INTERVAL_SECONDS = 5
DEFAULT_MAX_POLL_INTERVAL_SECONDS = 30

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max deployment file

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
# module.path:attribute
VALID_FACTORY_PATTERN = r"^[A-Za-z_][\w.]*:[A-Za-z_]\w*$"


@dataclass(frozen=True)
class Config:
    """Provisioner configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    spec_path: Path = field(default_factory=lambda: Path(DEFAULT_SPEC_PATH))

    # Timing
    principal_wait_timeout_seconds: int = DEFAULT_PRINCIPAL_WAIT_SECONDS
    provider_wait_timeout_seconds: int = DEFAULT_PROVIDER_WAIT_SECONDS
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    max_poll_interval_seconds: int = DEFAULT_MAX_POLL_INTERVAL_SECONDS

    # Logging
    log_format: LogFormat = LogFormat.JSON
    log_level: str = "INFO"

    # Import path of a zero-argument factory returning a ControlPlaneClient
    client_factory: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization (fail-fast)."""
        errors: list[str] = []

        for name, value in (
            ("PRINCIPAL_WAIT_TIMEOUT", self.principal_wait_timeout_seconds),
            ("PROVIDER_WAIT_TIMEOUT", self.provider_wait_timeout_seconds),
        ):
            if not 0 <= value <= MAX_WAIT_SECONDS:
                errors.append(f"{name} must be between 0 and {MAX_WAIT_SECONDS} seconds")

        if self.poll_interval_seconds < 1:
            errors.append("POLL_INTERVAL must be at least 1 second")
        if self.max_poll_interval_seconds < self.poll_interval_seconds:
            errors.append("MAX_POLL_INTERVAL must be >= POLL_INTERVAL")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {VALID_LOG_LEVELS}: {self.log_level}")

        if self.client_factory and not re.match(VALID_FACTORY_PATTERN, self.client_factory):
            errors.append(
                f"CONTROL_PLANE_CLIENT must look like 'package.module:factory': "
                f"{self.client_factory}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def principal_poll(self) -> PollPolicy:
        return PollPolicy(
            timeout_seconds=self.principal_wait_timeout_seconds,
            interval_seconds=self.poll_interval_seconds,
            max_interval_seconds=self.max_poll_interval_seconds,
        )

    @property
    def provider_poll(self) -> PollPolicy:
        return PollPolicy(
            timeout_seconds=self.provider_wait_timeout_seconds,
            interval_seconds=self.poll_interval_seconds,
            max_interval_seconds=self.max_poll_interval_seconds,
        )

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            DEPLOYMENT_SPEC: Path to the deployment YAML (default: deployment.yaml)
            PRINCIPAL_WAIT_TIMEOUT: Max seconds to wait for the app identity principal
                (default: 300)
            PROVIDER_WAIT_TIMEOUT: Max seconds to wait for provider registration
                (default: 600)
            POLL_INTERVAL: Initial poll interval in seconds (default: 5)
            MAX_POLL_INTERVAL: Backoff ceiling in seconds (default: 30)
            LOG_FORMAT: json or text (default: json)
            LOG_LEVEL: Python log level name (default: INFO)
            CONTROL_PLANE_CLIENT: module:factory returning a ControlPlaneClient
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_log_format(value: str | None) -> LogFormat:
            if not value:
                return LogFormat.JSON
            try:
                return LogFormat(value.lower())
            except ValueError as e:
                valid = [f.value for f in LogFormat]
                raise ConfigurationError(f"LOG_FORMAT must be one of {valid}: {value}") from e

        return cls(
            spec_path=Path(os.environ.get("DEPLOYMENT_SPEC", DEFAULT_SPEC_PATH)),
            principal_wait_timeout_seconds=get_int(
                "PRINCIPAL_WAIT_TIMEOUT", DEFAULT_PRINCIPAL_WAIT_SECONDS
            ),
            provider_wait_timeout_seconds=get_int(
                "PROVIDER_WAIT_TIMEOUT", DEFAULT_PROVIDER_WAIT_SECONDS
            ),
            poll_interval_seconds=get_int("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            max_poll_interval_seconds=get_int(
                "MAX_POLL_INTERVAL", DEFAULT_MAX_POLL_INTERVAL_SECONDS
            ),
            log_format=get_log_format(os.environ.get("LOG_FORMAT")),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            client_factory=os.environ.get("CONTROL_PLANE_CLIENT") or None,
        )
