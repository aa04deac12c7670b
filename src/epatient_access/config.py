"""Configuration file support for epatient-access."""

import logging
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

CREDENTIAL_KEYS = {
    "password",
    "db_password",
    "database_password",
    "secret",
    "signing_key",
    "api_key",
    "token",
    "credentials",
}


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


class CredentialInConfigError(Exception):
    """Raised when credentials are detected in configuration files."""

    pass


@dataclass
class ChallengeConfig:
    code_length: int = 6
    ttl_minutes: int = 10
    max_attempts: int = 3

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChallengeConfig":
        return cls(
            code_length=data.get("code_length", 6),
            ttl_minutes=data.get("ttl_minutes", 10),
            max_attempts=data.get("max_attempts", 3),
        )


@dataclass
class SessionConfig:
    session_hours: int = 8
    issuer: str = "epatient-access"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionConfig":
        return cls(
            session_hours=data.get("session_hours", 8),
            issuer=data.get("issuer", "epatient-access"),
        )


@dataclass
class EmergencyConfig:
    grant_window_minutes: int = 30
    min_reason_length: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EmergencyConfig":
        return cls(
            grant_window_minutes=data.get("grant_window_minutes", 30),
            min_reason_length=data.get("min_reason_length", 1),
        )


@dataclass
class BiometricConfig:
    match_threshold: float = 0.9

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BiometricConfig":
        return cls(match_threshold=data.get("match_threshold", 0.9))


@dataclass
class SweeperConfig:
    interval_seconds: float = 60.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SweeperConfig":
        return cls(interval_seconds=data.get("interval_seconds", 60.0))


@dataclass
class StorageConfig:
    database_url: str | None = None
    min_pool_size: int = 1
    max_pool_size: int = 10
    command_timeout: float = 10.0
    retry_max_attempts: int = 3
    retry_initial_delay: float = 0.05
    retry_max_delay: float = 1.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StorageConfig":
        retry = data.get("retry", {})
        return cls(
            database_url=data.get("database_url"),
            min_pool_size=data.get("min_pool_size", 1),
            max_pool_size=data.get("max_pool_size", 10),
            command_timeout=data.get("command_timeout", 10.0),
            retry_max_attempts=retry.get("max_attempts", 3),
            retry_initial_delay=retry.get("initial_delay", 0.05),
            retry_max_delay=retry.get("max_delay", 1.0),
        )


@dataclass
class AuditConfig:
    csv_delimiter: str = ","
    default_query_limit: int = 100

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditConfig":
        return cls(
            csv_delimiter=data.get("csv_delimiter", ","),
            default_query_limit=data.get("default_query_limit", 100),
        )


@dataclass
class AccessConfig:
    challenge: ChallengeConfig = field(default_factory=ChallengeConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    emergency: EmergencyConfig = field(default_factory=EmergencyConfig)
    biometric: BiometricConfig = field(default_factory=BiometricConfig)
    sweeper: SweeperConfig = field(default_factory=SweeperConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    log_level: str = "INFO"
    expose_codes: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccessConfig":
        return cls(
            challenge=ChallengeConfig.from_dict(data.get("challenge", {})),
            session=SessionConfig.from_dict(data.get("session", {})),
            emergency=EmergencyConfig.from_dict(data.get("emergency", {})),
            biometric=BiometricConfig.from_dict(data.get("biometric", {})),
            sweeper=SweeperConfig.from_dict(data.get("sweeper", {})),
            storage=StorageConfig.from_dict(data.get("storage", {})),
            audit=AuditConfig.from_dict(data.get("audit", {})),
            log_level=data.get("log_level", "INFO"),
            expose_codes=data.get("expose_codes", False),
        )


def detect_credentials_in_config(
    config_dict: dict[str, Any],
    path: str = "",
    warn_only: bool = True,
) -> list[str]:
    """Detect potential credentials in a configuration dictionary.

    Args:
        config_dict: Configuration dictionary to check.
        path: Current path in nested config (for error messages).
        warn_only: If True, emit warning. If False, raise error.

    Returns:
        List of detected credential key paths.

    Raises:
        CredentialInConfigError: If credentials found and warn_only=False.
    """
    detected = []

    for key, value in config_dict.items():
        current_path = f"{path}.{key}" if path else key
        key_lower = key.lower()

        if any(cred_key in key_lower for cred_key in CREDENTIAL_KEYS):
            if value and value != "":
                detected.append(current_path)

        if isinstance(value, dict):
            detected.extend(detect_credentials_in_config(value, current_path, warn_only=True))

    if detected:
        msg = (
            f"Potential credentials detected in config file: {', '.join(detected)}. "
            "Secrets must be provided via environment variables or a secrets "
            "provider, not configuration files."
        )
        if warn_only:
            logger.warning(msg)
        else:
            raise CredentialInConfigError(msg)

    return detected


def _require_positive(section: dict[str, Any], name: str, kind: type, label: str) -> None:
    if name not in section:
        return
    value = section[name]
    if isinstance(value, bool) or not isinstance(value, kind):
        raise ConfigValidationError(
            f"{label}.{name} must be {kind.__name__}, got {type(value).__name__}"
        )
    if value <= 0:
        raise ConfigValidationError(f"{label}.{name} must be positive, got {value}")


def validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values.

    Raises:
        ConfigValidationError: If any configuration value is invalid.
    """
    challenge = config_dict.get("challenge", {})
    for name in ("code_length", "ttl_minutes", "max_attempts"):
        _require_positive(challenge, name, int, "challenge")
    if challenge.get("code_length", 6) < 4:
        raise ConfigValidationError("challenge.code_length must be at least 4")

    _require_positive(config_dict.get("session", {}), "session_hours", int, "session")

    emergency = config_dict.get("emergency", {})
    _require_positive(emergency, "grant_window_minutes", int, "emergency")
    _require_positive(emergency, "min_reason_length", int, "emergency")

    biometric = config_dict.get("biometric", {})
    if "match_threshold" in biometric:
        threshold = biometric["match_threshold"]
        if not isinstance(threshold, int | float) or not 0 < threshold <= 1:
            raise ConfigValidationError(
                f"biometric.match_threshold must be in (0, 1], got {threshold!r}"
            )

    sweeper = config_dict.get("sweeper", {})
    if "interval_seconds" in sweeper:
        interval = sweeper["interval_seconds"]
        if not isinstance(interval, int | float) or interval <= 0:
            raise ConfigValidationError(
                f"sweeper.interval_seconds must be positive, got {interval!r}"
            )

    storage = config_dict.get("storage", {})
    for name in ("min_pool_size", "max_pool_size"):
        _require_positive(storage, name, int, "storage")
    if storage.get("min_pool_size", 1) > storage.get("max_pool_size", 10):
        raise ConfigValidationError("storage.min_pool_size cannot exceed storage.max_pool_size")
    _require_positive(storage.get("retry", {}), "max_attempts", int, "storage.retry")

    if "log_level" in config_dict:
        log_level = config_dict["log_level"]
        if not isinstance(log_level, str):
            raise ConfigValidationError(
                f"log_level must be a string, got {type(log_level).__name__}"
            )
        if log_level.upper() not in VALID_LOG_LEVELS:
            raise ConfigValidationError(
                f"log_level must be one of {VALID_LOG_LEVELS}, got '{log_level}'"
            )


def load_config(config_path: Path, overrides: dict[str, Any] | None = None) -> AccessConfig:
    """Load configuration from the ``[epatient_access]`` table of a TOML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ConfigValidationError: If any configuration value is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "rb") as f:
        toml_data = tomllib.load(f)

    detect_credentials_in_config(toml_data, warn_only=True)

    config_dict = toml_data.get("epatient_access", {})
    if overrides:
        config_dict.update(overrides)

    validate_config(config_dict)

    config = AccessConfig.from_dict(config_dict)
    if config.expose_codes:
        logger.warning("expose_codes is enabled; one-time codes will be returned to callers")
    return config
