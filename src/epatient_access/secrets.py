"""Secret retrieval for signing keys and database credentials.

Secrets are read through a ``SecretProvider`` and wrapped in ``MaskedSecret``
so that they never show up in logs, reprs or error messages.
"""

import logging
import os
import re
from abc import ABC, abstractmethod
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

TOKEN_SIGNING_KEY_VAR = "EPATIENT_ACCESS_SIGNING_KEY"
BIOMETRIC_KEY_VAR = "EPATIENT_ACCESS_BIOMETRIC_KEY"
DB_PASSWORD_VAR = "EPATIENT_ACCESS_DB_PASSWORD"

MIN_SIGNING_KEY_LENGTH = 32


class MaskedSecret:
    """Wrapper that prevents accidental exposure of secret values."""

    def __init__(self, value: str):
        self._value = value

    def get_value(self) -> str:
        return self._value

    def __str__(self) -> str:
        return "***MASKED***"

    def __repr__(self) -> str:
        return "MaskedSecret(***)"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, MaskedSecret):
            return self._value == other._value
        return False

    def __hash__(self) -> int:
        return hash(self._value)


class SecretProvider(ABC):
    """Abstract base class for secrets backends."""

    @abstractmethod
    def get_secret(self, key: str) -> str | None:
        """Retrieve a secret value by key, or None if it is not set."""
        pass

    def get_secret_masked(self, key: str) -> MaskedSecret | None:
        value = self.get_secret(key)
        if value is not None:
            return MaskedSecret(value)
        return None


class EnvSecretProvider(SecretProvider):
    """Retrieve secrets from environment variables."""

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    def get_secret(self, key: str) -> str | None:
        full_key = f"{self.prefix}{key}" if self.prefix else key
        value = os.environ.get(full_key)
        if value is not None:
            logger.debug("Secret loaded from environment variable: %s", full_key)
        return value


class StaticSecretProvider(SecretProvider):
    """In-process secrets, for embedding applications and tests."""

    def __init__(self, values: dict[str, str]):
        self._values = dict(values)

    def get_secret(self, key: str) -> str | None:
        return self._values.get(key)


class SecretProviderError(Exception):
    """Raised when a required secret is missing or unusable."""

    pass


class CredentialValidationError(Exception):
    """Raised when credentials are found in insecure locations."""

    pass


def validate_no_password_in_url(url: str) -> None:
    """Reject database URLs that embed a password.

    Raises:
        CredentialValidationError: If a password is present in the URL.
    """
    parsed = urlparse(url)
    user_info = parsed.netloc.split("@")[0] if "@" in parsed.netloc else ""
    if parsed.password or ":" in user_info:
        raise CredentialValidationError(
            "Database password detected in connection URL. "
            f"Provide it via the {DB_PASSWORD_VAR} (or PGPASSWORD) environment "
            "variable or a secrets provider."
        )


def mask_password_in_url(url: str) -> str:
    """Mask any password in a database URL for safe logging."""
    pattern = r"(://[^:]+:)([^@]+)(@)"
    return re.sub(pattern, r"\1***MASKED***\3", url)


def get_default_provider() -> SecretProvider:
    return EnvSecretProvider()


def get_database_password(
    provider: SecretProvider | None = None,
    password_env_var: str = DB_PASSWORD_VAR,
) -> str | None:
    """Get the database password, falling back to PGPASSWORD."""
    if provider is None:
        provider = get_default_provider()

    password = provider.get_secret(password_env_var)
    if password:
        logger.info("Database password loaded from %s", password_env_var)
        return password

    password = provider.get_secret("PGPASSWORD")
    if password:
        logger.info("Database password loaded from PGPASSWORD")
        return password

    return None


def require_secret(
    key: str,
    provider: SecretProvider | None = None,
    min_length: int = 1,
) -> MaskedSecret:
    """Load a mandatory secret.

    Raises:
        SecretProviderError: If the secret is missing or shorter than min_length.
    """
    if provider is None:
        provider = get_default_provider()

    secret = provider.get_secret_masked(key)
    if secret is None:
        raise SecretProviderError(f"Required secret {key} is not set")
    if len(secret.get_value()) < min_length:
        raise SecretProviderError(f"Secret {key} must be at least {min_length} characters")
    return secret


def get_signing_key(provider: SecretProvider | None = None) -> MaskedSecret:
    """HMAC key used to sign session and emergency tokens."""
    return require_secret(TOKEN_SIGNING_KEY_VAR, provider, min_length=MIN_SIGNING_KEY_LENGTH)


def get_biometric_key(provider: SecretProvider | None = None) -> MaskedSecret:
    """Key used to derive biometric reference handles."""
    return require_secret(BIOMETRIC_KEY_VAR, provider, min_length=MIN_SIGNING_KEY_LENGTH)
