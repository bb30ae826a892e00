"""Authentication configuration."""

from pydantic import BaseModel, Field

from auth.types import UserRole


class AuthConfig(BaseModel):
    """
    Authentication configuration.

    Short durations are in seconds or minutes, long ones in days. Token
    lifetimes use the compact "1h" / "7d" notation understood by
    auth.tokens.parse_expiry.
    """

    # Application
    environment: str = Field(
        default="development",
        description="development, production or test (test disables rate limiting)",
    )
    app_name: str = Field(
        default="Energy Solutions",
        description="Token issuer and email sender name",
    )
    app_url: str = Field(
        default="http://localhost:8000",
        description="Token audience",
    )

    # Passwords
    bcrypt_rounds: int = Field(
        default=12,
        description="bcrypt cost factor",
        ge=4,
        le=16,
    )

    # Verification codes
    code_expiry_minutes: int = Field(
        default=15,
        description="How long a verification code remains valid",
        ge=1,
        le=60,
    )
    code_max_attempts: int = Field(
        default=3,
        description="Checks allowed per code before it is dead",
        ge=1,
        le=10,
    )
    code_resend_cooldown_seconds: int = Field(
        default=60,
        description="Minimum gap between two codes for the same user and purpose",
        ge=0,
        le=600,
    )

    # Tokens
    access_token_expires_in: str = Field(
        default="1h",
        description="Access token lifetime",
    )
    refresh_token_expires_in: str = Field(
        default="7d",
        description="Refresh token lifetime",
    )

    # Sessions
    session_activity_extension_minutes: int = Field(
        default=60,
        description="Access expiry is pushed this far past the latest activity",
        ge=1,
    )
    session_retention_days: int = Field(
        default=30,
        description="Inactive sessions are purged after this many days",
        ge=1,
    )

    # Cookies
    cookie_secure: bool = Field(
        default=False,
        description="Mark token cookies Secure (always on in production)",
    )
    cookie_samesite: str = Field(default="strict")

    # Rate limiting
    rate_limit_exempt_roles: list[UserRole] = Field(
        default_factory=lambda: [UserRole.SYSTEM_ADMIN],
        description="Roles that bypass every rate limiter",
    )

    # Background purges
    session_purge_interval_minutes: int = Field(default=60, ge=1)
    code_purge_interval_minutes: int = Field(default=360, ge=1)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_test(self) -> bool:
        return self.environment == "test"
