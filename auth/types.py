"""Pydantic models and static role tables for the auth domain."""

import re
from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator


class UserRole(str, Enum):
    """Closed set of roles. Rank and permissions live in the tables below."""

    SYSTEM_ADMIN = "system-admin"
    SALES_ADMIN = "sales-admin"
    WEB_ADMIN = "web-admin"
    HELPDESK = "helpdesk"
    CUSTOMER = "customer"

    @property
    def rank(self) -> int:
        return ROLE_RANK[self]

    @property
    def permissions(self) -> frozenset["Permission"]:
        return ROLE_PERMISSIONS[self]


class UserStatus(str, Enum):
    PENDING_VERIFICATION = "pending-verification"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class Permission(str, Enum):
    """Capabilities granted by role or individually."""

    MANAGE_ALL_USERS = "manage_all_users"
    CREATE_ADMINS = "create_admins"
    DELETE_ADMINS = "delete_admins"
    VIEW_SYSTEM_LOGS = "view_system_logs"
    MANAGE_SYSTEM_SETTINGS = "manage_system_settings"
    ACCESS_ALL_MODULES = "access_all_modules"
    MANAGE_PRODUCTS = "manage_products"
    MANAGE_ORDERS = "manage_orders"
    VIEW_SALES_ANALYTICS = "view_sales_analytics"
    MANAGE_INVENTORY = "manage_inventory"
    RECORD_OFFLINE_SALES = "record_offline_sales"
    MANAGE_CUSTOMERS = "manage_customers"
    MANAGE_SERVICES = "manage_services"
    MANAGE_PROJECTS = "manage_projects"
    MANAGE_STAFF = "manage_staff"
    MANAGE_TESTIMONIALS = "manage_testimonials"
    MANAGE_WEBSITE_CONTENT = "manage_website_content"
    MANAGE_SLIDES = "manage_slides"
    VIEW_SUPPORT_TICKETS = "view_support_tickets"
    RESPOND_TO_INQUIRIES = "respond_to_inquiries"
    MANAGE_CUSTOMER_COMMUNICATIONS = "manage_customer_communications"
    VIEW_CUSTOMER_INFO = "view_customer_info"
    VIEW_PRODUCTS = "view_products"
    PLACE_ORDERS = "place_orders"
    VIEW_OWN_ORDERS = "view_own_orders"
    SUBMIT_SUPPORT_TICKETS = "submit_support_tickets"
    MANAGE_OWN_PROFILE = "manage_own_profile"


ROLE_RANK: dict[UserRole, int] = {
    UserRole.SYSTEM_ADMIN: 5,
    UserRole.SALES_ADMIN: 4,
    UserRole.WEB_ADMIN: 3,
    UserRole.HELPDESK: 2,
    UserRole.CUSTOMER: 1,
}

ROLE_PERMISSIONS: dict[UserRole, frozenset[Permission]] = {
    UserRole.SYSTEM_ADMIN: frozenset({
        Permission.MANAGE_ALL_USERS,
        Permission.CREATE_ADMINS,
        Permission.DELETE_ADMINS,
        Permission.VIEW_SYSTEM_LOGS,
        Permission.MANAGE_SYSTEM_SETTINGS,
        Permission.ACCESS_ALL_MODULES,
    }),
    UserRole.SALES_ADMIN: frozenset({
        Permission.MANAGE_PRODUCTS,
        Permission.MANAGE_ORDERS,
        Permission.VIEW_SALES_ANALYTICS,
        Permission.MANAGE_INVENTORY,
        Permission.RECORD_OFFLINE_SALES,
        Permission.MANAGE_CUSTOMERS,
    }),
    UserRole.WEB_ADMIN: frozenset({
        Permission.MANAGE_SERVICES,
        Permission.MANAGE_PROJECTS,
        Permission.MANAGE_STAFF,
        Permission.MANAGE_TESTIMONIALS,
        Permission.MANAGE_WEBSITE_CONTENT,
        Permission.MANAGE_SLIDES,
    }),
    UserRole.HELPDESK: frozenset({
        Permission.VIEW_SUPPORT_TICKETS,
        Permission.RESPOND_TO_INQUIRIES,
        Permission.MANAGE_CUSTOMER_COMMUNICATIONS,
        Permission.VIEW_CUSTOMER_INFO,
    }),
    UserRole.CUSTOMER: frozenset({
        Permission.VIEW_PRODUCTS,
        Permission.PLACE_ORDERS,
        Permission.VIEW_OWN_ORDERS,
        Permission.SUBMIT_SUPPORT_TICKETS,
        Permission.MANAGE_OWN_PROFILE,
    }),
}

# Roles that may act on resources owned by other users
OWNERSHIP_OVERRIDE_ROLES = frozenset({
    UserRole.SYSTEM_ADMIN,
    UserRole.SALES_ADMIN,
    UserRole.WEB_ADMIN,
})


class CodePurpose(str, Enum):
    EMAIL_VERIFICATION = "email-verification"
    PASSWORD_RESET = "password-reset"
    TWO_FACTOR = "two-factor-auth"
    PHONE_VERIFICATION = "phone-verification"


# =============================================================================
# Records
# =============================================================================


class Address(BaseModel):
    street: str | None = None
    city: str | None = None
    district: str | None = None
    country: str | None = None
    postal_code: str | None = None


class UserMetadata(BaseModel):
    """Login bookkeeping. Versioned so stored rows can be migrated."""

    version: int = 1
    last_login: datetime | None = None
    login_count: int = 0
    failed_login_attempts: int = 0
    last_failed_login: datetime | None = None
    last_password_change: datetime | None = None
    password_change_count: int = 0
    ip_address: str | None = None
    user_agent: str | None = None
    device_info: str | None = None


class ClientInfo(BaseModel):
    """Request origin recorded on logins and sessions."""

    ip_address: str | None = None
    user_agent: str | None = None
    device_info: str | None = None


class SessionMetadata(ClientInfo):
    version: int = 1


class User(BaseModel):
    """A registered account. password_hash never leaves the process."""

    id: UUID
    email: EmailStr
    password_hash: str = Field(..., exclude=True, repr=False)
    first_name: str
    last_name: str
    phone_number: str | None = None
    company: str | None = None
    address: Address | None = None
    role: UserRole = UserRole.CUSTOMER
    status: UserStatus = UserStatus.PENDING_VERIFICATION
    email_verified: bool = False
    email_verified_at: datetime | None = None
    permissions: list[Permission] = Field(default_factory=list)
    metadata: UserMetadata = Field(default_factory=UserMetadata)
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def effective_permissions(self) -> frozenset[Permission]:
        """Role-derived permissions plus individually granted ones."""
        return self.role.permissions | frozenset(self.permissions)


class VerificationCode(BaseModel):
    """A short numeric secret bound to (user, purpose)."""

    id: UUID
    user_id: UUID
    email: EmailStr
    code: str = Field(..., repr=False)
    purpose: CodePurpose
    created_at: datetime
    sent_at: datetime
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = 3
    verified: bool  # Required - fail closed, no default
    verified_at: datetime | None = None

    model_config = {"from_attributes": True}

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def is_usable(self, now: datetime) -> bool:
        return not self.verified and not self.is_expired(now) and not self.is_exhausted()


class Session(BaseModel):
    """Server-side record of one issued token pair."""

    id: UUID
    user_id: UUID
    access_token: str = Field(..., repr=False)
    refresh_token: str = Field(..., repr=False)
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    is_active: bool = True
    last_activity_at: datetime
    access_expires_at: datetime
    refresh_expires_at: datetime
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    def is_access_expired(self, now: datetime) -> bool:
        return now >= self.access_expires_at

    def is_refresh_expired(self, now: datetime) -> bool:
        return now >= self.refresh_expires_at


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    access_ttl: int = Field(..., description="Access token lifetime in seconds")
    refresh_ttl: int = Field(..., description="Refresh token lifetime in seconds")


class TokenClaims(BaseModel):
    user_id: UUID
    email: str
    role: UserRole
    token_id: str | None = None


class Identity(BaseModel):
    """Resolved caller attached to a request after authentication."""

    user_id: UUID
    email: str
    role: UserRole
    permissions: frozenset[Permission]
    session_id: UUID


class AuthenticatedUser(BaseModel):
    """User plus the session and tokens minted for them."""

    user: User
    session: Session
    tokens: TokenPair


# =============================================================================
# Request payloads
# =============================================================================

# Open character set; each class must appear at least once
_PASSWORD_PATTERN = re.compile(r"(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[^A-Za-z0-9]).{8,128}", re.DOTALL)
_CODE_PATTERN = re.compile(r"^\d{6}$")
_PHONE_PATTERN = re.compile(
    r"^[\+]?[(]?[0-9]{1,4}[)]?[-\s\.]?[(]?[0-9]{1,4}[)]?[-\s\.]?[0-9]{1,9}$"
)


def validate_password_strength(value: str) -> str:
    """Boundary password policy: 8-128 chars, upper, lower, digit, symbol."""
    if len(value) < 8:
        raise ValueError("Password must be at least 8 characters long")
    if len(value) > 128:
        raise ValueError("Password must be at most 128 characters long")
    if not _PASSWORD_PATTERN.fullmatch(value):
        raise ValueError(
            "Password must contain at least one uppercase letter, one lowercase "
            "letter, one number, and one special character"
        )
    return value


def validate_code_format(value: str) -> str:
    if not _CODE_PATTERN.match(value):
        raise ValueError("Code must be exactly 6 digits")
    return value


def normalize_email(email: str) -> str:
    return email.strip().lower()


class _EmailPayload(BaseModel):
    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value):
        return normalize_email(value) if isinstance(value, str) else value


class ProfileFields(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    phone_number: str | None = None
    company: str | None = Field(None, max_length=100)

    @field_validator("first_name", "last_name", "company", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("phone_number")
    @classmethod
    def _check_phone(cls, value):
        if value and not _PHONE_PATTERN.match(value):
            raise ValueError("Please provide a valid phone number")
        return value


class RegisterRequest(ProfileFields, _EmailPayload):
    password: str
    confirm_password: str | None = None

    @field_validator("password")
    @classmethod
    def _check_password(cls, value):
        return validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("Passwords do not match")
        return self


class LoginRequest(_EmailPayload):
    password: str = Field(..., min_length=1)


class VerifyEmailRequest(BaseModel):
    code: str
    email: EmailStr | None = None

    @field_validator("code")
    @classmethod
    def _check_code(cls, value):
        return validate_code_format(value)

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value):
        return normalize_email(value) if isinstance(value, str) else value


class EmailRequest(_EmailPayload):
    """Body of resend-verification and forgot-password."""


class ResetPasswordRequest(_EmailPayload):
    code: str
    new_password: str
    confirm_password: str | None = None

    @field_validator("code")
    @classmethod
    def _check_code(cls, value):
        return validate_code_format(value)

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value):
        return validate_password_strength(value)

    @model_validator(mode="after")
    def _passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.new_password:
            raise ValueError("Passwords do not match")
        return self


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str
    confirm_password: str | None = None

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value):
        return validate_password_strength(value)

    @model_validator(mode="after")
    def _check_new_password(self):
        if self.new_password == self.current_password:
            raise ValueError("New password must be different from current password")
        if self.confirm_password is not None and self.confirm_password != self.new_password:
            raise ValueError("Passwords do not match")
        return self


class RefreshTokenRequest(BaseModel):
    refresh_token: str | None = None


class ProfileUpdate(BaseModel):
    """Self-service profile edits.

    Unknown keys (email, password, role, status, email_verified, ...) are
    dropped rather than rejected.
    """

    first_name: str | None = Field(None, min_length=1, max_length=50)
    last_name: str | None = Field(None, min_length=1, max_length=50)
    phone_number: str | None = None
    company: str | None = Field(None, max_length=100)
    address: Address | None = None

    model_config = {"extra": "ignore"}

    @field_validator("first_name", "last_name", "company", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("first_name", "last_name")
    @classmethod
    def _names_not_null(cls, value):
        # users.first_name / last_name are NOT NULL
        if value is None:
            raise ValueError("Name cannot be null")
        return value

    @field_validator("phone_number")
    @classmethod
    def _check_phone(cls, value):
        if value and not _PHONE_PATTERN.match(value):
            raise ValueError("Please provide a valid phone number")
        return value

    @model_validator(mode="after")
    def _at_least_one_field(self):
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self
