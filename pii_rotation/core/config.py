"""
Configuration Management

Environment settings are loaded with Pydantic Settings (DATABASE_URL, log
directory, cipher backend). Operator input given on the command line (keys,
batch size, dry-run flag) is validated separately by RotationConfig, which
must fail before any datastore contact.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import Field, ConfigDict
from pydantic_settings import BaseSettings

from pii_rotation.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

MIN_KEY_LENGTH = 32
DEFAULT_BATCH_SIZE = 100

# libpq sslmodes that do not verify the server certificate
UNVERIFIED_SSL_MODES = ("disable", "allow", "prefer", "require")


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================================
    # Database Configuration
    # ============================================================
    database_url: str = Field("", description="PostgreSQL connection URL")
    database_sslmode: Optional[str] = Field(
        None,
        description="libpq sslmode appended to DATABASE_URL (verify-full recommended)"
    )
    database_connect_retries: int = Field(3, description="Connection attempts before giving up")

    # ============================================================
    # Rotation Configuration
    # ============================================================
    rotation_log_dir: str = Field("logs", description="Directory for per-run audit log files")
    rotation_cipher_backend: str = Field("pgcrypto", description="Cipher backend: pgcrypto or fernet")

    # Application
    log_level: str = Field("INFO", description="Root log level")

    @property
    def effective_database_url(self) -> str:
        """Database URL normalised for SQLAlchemy, with sslmode applied."""
        url = self.database_url
        # Some providers hand out postgres:// which SQLAlchemy no longer accepts
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)
        if self.database_sslmode and "sslmode=" not in url:
            separator = "&" if "?" in url else "?"
            url = f"{url}{separator}sslmode={self.database_sslmode}"
        return url

    @property
    def verifies_certificates(self) -> bool:
        """Whether the configured sslmode validates the server certificate."""
        url = self.effective_database_url
        if not url.startswith("postgresql"):
            return True
        for mode in ("verify-full", "verify-ca"):
            if f"sslmode={mode}" in url:
                return True
        return False


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings


def validate_key_pair(old_key: Optional[str], new_key: Optional[str],
                      old_name: str = "--old-key", new_name: str = "--new-key") -> None:
    """
    Validate an old/new key pair.

    Raises:
        ConfigurationError: If a key is missing, shorter than MIN_KEY_LENGTH,
            or both keys are identical
    """
    if not old_key or not new_key:
        raise ConfigurationError(f"Both {old_name} and {new_name} are required")
    if old_key == new_key:
        raise ConfigurationError(f"{old_name} and {new_name} must be different")
    if len(old_key) < MIN_KEY_LENGTH or len(new_key) < MIN_KEY_LENGTH:
        raise ConfigurationError(f"Encryption keys must be at least {MIN_KEY_LENGTH} characters")


def validate_batch_size(batch_size) -> int:
    """Return batch_size as int, or raise ConfigurationError if not a positive integer."""
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
        raise ConfigurationError(f"Batch size must be a positive integer, got {batch_size!r}")
    return batch_size


@dataclass(frozen=True)
class RotationConfig:
    """Operator input for one rotation invocation."""

    old_key: str
    new_key: str
    batch_size: int = DEFAULT_BATCH_SIZE
    dry_run: bool = False
    rotation_id: Optional[str] = None

    def __post_init__(self):
        validate_key_pair(self.old_key, self.new_key)
        validate_batch_size(self.batch_size)
        if self.rotation_id is not None and not self.rotation_id.strip():
            raise ConfigurationError("--rotation-id must not be empty")

    def __repr__(self) -> str:
        # Never render key material
        return (
            f"RotationConfig(batch_size={self.batch_size}, dry_run={self.dry_run}, "
            f"rotation_id={self.rotation_id!r})"
        )
