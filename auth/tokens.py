"""Signed access/refresh token pairs (HS256 JWT via python-jose).

Access and refresh tokens are signed with different secrets, so one can
never be replayed as the other. Each token carries a unique jti, so two
pairs minted for the same user in the same second still differ.
"""

import logging
import re
from datetime import timedelta
from uuid import uuid4

from jose import jwt, ExpiredSignatureError, JWTError
from pydantic import ValidationError

from auth.config import AuthConfig
from auth.exceptions import TokenExpiredError, TokenMalformedError
from auth.types import TokenClaims, TokenPair, User
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"

_EXPIRY_PATTERN = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}
_DEFAULT_EXPIRY_SECONDS = 3600


def parse_expiry(value: str) -> int:
    """Convert "30s" / "15m" / "1h" / "7d" to seconds. Anything else is one hour."""
    match = _EXPIRY_PATTERN.match(value.strip()) if value else None
    if match is None:
        logger.warning(f"Unparsable token expiry {value!r}, using {_DEFAULT_EXPIRY_SECONDS}s")
        return _DEFAULT_EXPIRY_SECONDS
    return int(match.group(1)) * _UNIT_SECONDS[match.group(2)]


class TokenIssuer:
    """Mints and verifies signed token pairs."""

    def __init__(self, access_secret: str, refresh_secret: str, config: AuthConfig):
        if not access_secret or not refresh_secret:
            raise ValueError("Access and refresh token secrets are required")
        if access_secret == refresh_secret:
            raise ValueError("Access and refresh token secrets must differ")

        self._secrets = {ACCESS: access_secret, REFRESH: refresh_secret}
        self._issuer = config.app_name
        self._audience = config.app_url
        self.access_ttl = parse_expiry(config.access_token_expires_in)
        self.refresh_ttl = parse_expiry(config.refresh_token_expires_in)

    def _sign(self, user: User, token_type: str, ttl: int) -> str:
        now = now_utc()
        claims = {
            "sub": str(user.id),
            "email": user.email,
            "role": user.role.value,
            "iss": self._issuer,
            "aud": self._audience,
            "iat": now,
            "exp": now + timedelta(seconds=ttl),
            "jti": uuid4().hex,
            "typ": token_type,
        }
        return jwt.encode(claims, self._secrets[token_type], algorithm=ALGORITHM)

    def issue(self, user: User) -> TokenPair:
        return TokenPair(
            access_token=self._sign(user, ACCESS, self.access_ttl),
            refresh_token=self._sign(user, REFRESH, self.refresh_ttl),
            access_ttl=self.access_ttl,
            refresh_ttl=self.refresh_ttl,
        )

    def _verify(self, token: str, token_type: str) -> TokenClaims:
        try:
            payload = jwt.decode(
                token,
                self._secrets[token_type],
                algorithms=[ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
            )
        except ExpiredSignatureError:
            logger.info(f"Rejected expired {token_type} token")
            raise TokenExpiredError(token_type)
        except JWTError as e:
            logger.info(f"Rejected malformed {token_type} token: {e}")
            raise TokenMalformedError(token_type)

        if payload.get("typ") != token_type:
            logger.warning(f"Token type mismatch: expected {token_type}")
            raise TokenMalformedError(token_type)

        try:
            return TokenClaims(
                user_id=payload["sub"],
                email=payload["email"],
                role=payload["role"],
                token_id=payload.get("jti"),
            )
        except (KeyError, ValidationError):
            logger.warning(f"{token_type} token has invalid claims")
            raise TokenMalformedError(token_type)

    def verify_access(self, token: str) -> TokenClaims:
        """
        Raises:
            TokenExpiredError / TokenMalformedError (both Unauthorized)
        """
        return self._verify(token, ACCESS)

    def verify_refresh(self, token: str) -> TokenClaims:
        return self._verify(token, REFRESH)
