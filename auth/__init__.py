"""Authentication and authorization modules."""

from auth.exceptions import (
    AppError,
    ErrorKind,
    InvalidOrExpiredCodeError,
    RateLimitedError,
    DuplicateEmailError,
    TokenError,
    TokenExpiredError,
    TokenMalformedError,
    NotificationFailedError,
)
from auth.types import (
    User,
    UserRole,
    UserStatus,
    Permission,
    CodePurpose,
    VerificationCode,
    Session,
    TokenPair,
    TokenClaims,
    Identity,
    AuthenticatedUser,
)
from auth.config import AuthConfig
from auth.database import AuthStore, PostgresAuthStore
from auth.memory_store import MemoryAuthStore
from auth.credentials import CredentialStore
from auth.verification import VerificationCodeManager, Notifier
from auth.tokens import TokenIssuer, parse_expiry
from auth.session import SessionManager
from auth.rate_limiter import RateLimiter, RateLimitRule
from auth.security_logger import SecurityLogger, SecurityEvent
from auth.service import AuthService
from auth.access_gate import AccessGate
from auth.pipeline import RequestPipeline, RequestContext, pipeline_dependency
from auth.purge import PurgeScheduler
from auth.api import create_auth_router
