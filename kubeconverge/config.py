"""Reconciler settings and duration parsing."""

import re
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from kubeconverge.exceptions import ConfigurationError

LEASE_POLICIES = ["queue", "cancel"]
LEASE_STORES = ["memory", "file", "kubernetes"]

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str | int | float) -> float:
    """Parse a duration such as ``90``, ``90s``, ``5m`` or ``1m30s`` into seconds.

    Args:
        value: Duration string or a plain number of seconds

    Returns:
        Duration in seconds

    Raises:
        ConfigurationError: If the value is not a valid non-negative duration
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value < 0:
            raise ConfigurationError(f"Duration cannot be negative: {value}")
        return float(value)

    text = str(value).strip().lower()
    if not text:
        raise ConfigurationError("Duration cannot be empty")

    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0:
            raise ConfigurationError(f"Duration cannot be negative: {value}")
        return seconds

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()

    if position != len(text) or position == 0:
        raise ConfigurationError(
            f"Invalid duration '{value}'",
            "Use a number of seconds or units like '90s', '5m', '1h', '1m30s'",
        )
    return total


class ReconcilerSettings(BaseModel):
    """Tunables for reconciliation passes."""

    max_attempts: int = Field(default=4, ge=1)
    backoff_initial: float = Field(default=1.0, ge=0)
    backoff_max: float = Field(default=30.0, ge=0)
    max_workers: int = Field(default=4, ge=1)
    poll_interval: float = Field(default=5.0, gt=0)
    verify_timeout: float = Field(default=300.0, gt=0)
    stable_polls: int = Field(default=2, ge=1)
    lease_policy: str = "queue"
    lease_timeout: float | None = None
    lease_store: str = "kubernetes"
    lease_dir: str = "~/.kubeconverge/leases"
    lease_namespace: str = "default"
    lease_duration: float = Field(default=60.0, ge=1)
    kubeconfig: str | None = None
    context: str | None = None
    docker_bin: str = "docker"
    field_manager: str = "kubeconverge"

    @field_validator(
        "poll_interval",
        "verify_timeout",
        "backoff_initial",
        "backoff_max",
        "lease_duration",
        mode="before",
    )
    @classmethod
    def validate_duration(cls, v):
        """Accept duration strings for time-valued settings."""
        if isinstance(v, str):
            return parse_duration(v)
        return v

    @field_validator("lease_timeout", mode="before")
    @classmethod
    def validate_lease_timeout(cls, v):
        """Accept a duration string or None."""
        if v is None or v == "":
            return None
        if isinstance(v, str):
            return parse_duration(v)
        return v

    @field_validator("lease_policy")
    @classmethod
    def validate_lease_policy(cls, v: str) -> str:
        """Validate lease policy is either queue or cancel."""
        if v not in LEASE_POLICIES:
            raise ValueError(f"lease_policy must be one of {LEASE_POLICIES}, got '{v}'")
        return v

    @field_validator("lease_store")
    @classmethod
    def validate_lease_store(cls, v: str) -> str:
        if v not in LEASE_STORES:
            raise ValueError(f"lease_store must be one of {LEASE_STORES}, got '{v}'")
        return v

    def save(self, path: str | Path) -> None:
        """Save settings to YAML file."""
        import yaml

        with open(path, "w") as f:
            yaml.dump(self.model_dump(), f, default_flow_style=False)

    @classmethod
    def load(cls, path: str | Path) -> "ReconcilerSettings":
        """Load settings from YAML file.

        Raises:
            ConfigurationError: If the file is missing or invalid
        """
        import yaml
        from pydantic import ValidationError as PydanticValidationError

        settings_path = Path(path)
        if not settings_path.exists():
            raise ConfigurationError(f"Settings file not found: {settings_path}")

        try:
            with open(settings_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse settings file: {settings_path}", str(e))

        if not isinstance(data, dict):
            raise ConfigurationError(f"Settings file must contain a mapping: {settings_path}")

        try:
            return cls(**data)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid settings in {settings_path}", str(e))

    def with_overrides(self, **overrides) -> "ReconcilerSettings":
        """Return a copy with the non-None overrides applied and re-validated."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        return type(self)(**{**self.model_dump(), **changes})
