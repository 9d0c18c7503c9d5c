"""
Configuration using pydantic-settings.

Security considerations:
- Every key is a separate 256-bit value (hex encoded)
- The TOTP encryption key must differ from every other key, so that
  compromise of one secret does not expose the others
- Development defaults are random per process; production must set
  all keys through the environment
"""
import secrets
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


KEY_HEX_LENGTH = 64  # 32 bytes


def _random_key() -> str:
    return secrets.token_hex(32)


class Settings(BaseSettings):
    """
    Strictly typed settings for the authentication core.

    Priority for loading:
    1. Environment variables prefixed with AUTHGUARD_
    2. .env file
    3. Default values (dev-safe only)
    """

    # ─────────────────────────────────────────────────────────────
    # Application metadata
    # ─────────────────────────────────────────────────────────────
    ISSUER: str = "AuthGuard"
    ENVIRONMENT: str = "development"

    # ─────────────────────────────────────────────────────────────
    # Keys
    # Each key has exactly one purpose. Rotating one never
    # affects data protected by another.
    # ─────────────────────────────────────────────────────────────
    SESSION_SECRET: str = ""
    TOTP_ENCRYPTION_KEY: str = ""
    RECOVERY_CODE_PEPPER: str = ""
    VERIFICATION_HMAC_SECRET: str = ""

    @field_validator(
        "SESSION_SECRET",
        "TOTP_ENCRYPTION_KEY",
        "RECOVERY_CODE_PEPPER",
        "VERIFICATION_HMAC_SECRET",
        mode="before",
    )
    @classmethod
    def validate_key(cls, v: str) -> str:
        """
        Accept a 64-character hex key, or generate one when unset.

        Raises:
            ValueError: If the key is not 32 bytes of hex
        """
        if v is None or not str(v).strip():
            return _random_key()

        key = str(v).strip().lower()
        if len(key) != KEY_HEX_LENGTH:
            raise ValueError(f"Key must be {KEY_HEX_LENGTH} hex characters")
        try:
            bytes.fromhex(key)
        except ValueError:
            raise ValueError("Key must be hex encoded") from None
        return key

    # ─────────────────────────────────────────────────────────────
    # Sessions
    # ─────────────────────────────────────────────────────────────
    SESSION_TTL_SECONDS: int = 60 * 60
    SESSION_REMEMBER_TTL_SECONDS: int = 30 * 24 * 60 * 60

    # ─────────────────────────────────────────────────────────────
    # Account lockout (failed password logins)
    # Cooldown doubles with every lockout, capped at LOCKOUT_MAX_SECONDS
    # ─────────────────────────────────────────────────────────────
    MAX_FAILED_LOGINS: int = 5
    FAILED_LOGIN_WINDOW_SECONDS: int = 15 * 60
    LOCKOUT_BASE_SECONDS: int = 15 * 60
    LOCKOUT_MAX_SECONDS: int = 24 * 60 * 60

    # ─────────────────────────────────────────────────────────────
    # Per-endpoint rate limiting (fixed window)
    # ─────────────────────────────────────────────────────────────
    RATE_LIMIT_MAX: int = 5
    RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60

    # ─────────────────────────────────────────────────────────────
    # TOTP
    # ─────────────────────────────────────────────────────────────
    TOTP_DRIFT_STEPS: int = 1
    ENROLLMENT_TTL_SECONDS: int = 10 * 60

    # ─────────────────────────────────────────────────────────────
    # Trusted devices
    # HASH_TRUSTED_DEVICE_TOKENS stores a digest instead of the token.
    # REVOKE_DEVICES_ON_TOTP_DISABLE also clears devices when 2FA is
    # turned off with a fresh code. Both default to off.
    # ─────────────────────────────────────────────────────────────
    TRUSTED_DEVICE_TTL_SECONDS: int = 30 * 24 * 60 * 60
    HASH_TRUSTED_DEVICE_TOKENS: bool = False
    REVOKE_DEVICES_ON_TOTP_DISABLE: bool = False

    # ─────────────────────────────────────────────────────────────
    # One-time tokens and password policy
    # ─────────────────────────────────────────────────────────────
    VERIFICATION_TOKEN_TTL_SECONDS: int = 24 * 60 * 60
    RESET_TOKEN_TTL_SECONDS: int = 60 * 60
    PASSWORD_HISTORY_SIZE: int = 5

    @field_validator("PASSWORD_HISTORY_SIZE")
    @classmethod
    def validate_history_size(cls, v: int) -> int:
        """At least the outgoing password has to be remembered."""
        if v < 1:
            raise ValueError("PASSWORD_HISTORY_SIZE must be at least 1")
        return v

    model_config = SettingsConfigDict(
        env_prefix="AUTHGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        validate_default=True,
    )

    @model_validator(mode="after")
    def check_key_separation(self) -> "Settings":
        """The TOTP encryption key must not double as any other key."""
        others = (
            self.SESSION_SECRET,
            self.RECOVERY_CODE_PEPPER,
            self.VERIFICATION_HMAC_SECRET,
        )
        if self.TOTP_ENCRYPTION_KEY in others:
            raise ValueError("TOTP_ENCRYPTION_KEY must be distinct from all other keys")
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def session_secret(self) -> bytes:
        return bytes.fromhex(self.SESSION_SECRET)

    def totp_encryption_key(self) -> bytes:
        return bytes.fromhex(self.TOTP_ENCRYPTION_KEY)

    def recovery_code_pepper(self) -> bytes:
        return bytes.fromhex(self.RECOVERY_CODE_PEPPER)

    def verification_hmac_secret(self) -> bytes:
        return bytes.fromhex(self.VERIFICATION_HMAC_SECRET)


@lru_cache()
def get_settings() -> Settings:
    """Settings for the running process, loaded once."""
    return Settings()
