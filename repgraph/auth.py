"""
RepGraph - Authentication
Caller identity from JWT bearer tokens.

Tokens are issued by the platform's login service; this module only
verifies them. A request without a valid token is the anonymous caller,
which may read public data but may not trigger computations.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import structlog
from fastapi import Request

from repgraph.config import Settings, get_settings

logger = structlog.get_logger()

# JWT settings
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = 24


@dataclass(frozen=True)
class Caller:
    user_id: Optional[str] = None
    is_operator: bool = False

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None

    def owns(self, user_id: Optional[str]) -> bool:
        return not self.is_anonymous and user_id is not None and self.user_id == user_id

    def can_act_for(self, user_id: Optional[str]) -> bool:
        """Owner or operator."""
        return self.is_operator or self.owns(user_id)


ANONYMOUS = Caller()


# ===========================================
# JWT Token Helpers
# ===========================================

def create_access_token(user_id: str, operator: bool = False, settings: Optional[Settings] = None) -> str:
    """Create a JWT access token (tests and internal tooling)."""
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": user_id,
        "role": "operator" if operator else "user",
        "exp": now + timedelta(hours=JWT_EXPIRY_HOURS),
        "iat": now,
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str, settings: Optional[Settings] = None) -> Caller:
    """Decode and validate a JWT token. Invalid or expired tokens yield the anonymous caller."""
    settings = settings or get_settings()
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.info("auth_token_expired")
        return ANONYMOUS
    except jwt.InvalidTokenError as e:
        logger.info("auth_token_invalid", error=str(e))
        return ANONYMOUS

    user_id = payload.get("user_id")
    if not user_id:
        return ANONYMOUS
    is_operator = payload.get("role") == "operator" or user_id in settings.OPERATOR_USER_IDS
    return Caller(user_id=str(user_id), is_operator=is_operator)


# ===========================================
# Auth Dependency
# ===========================================

async def get_caller(request: Request) -> Caller:
    """Caller from the Authorization header or the access_token cookie."""
    token = None
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header[7:]
    if not token:
        token = request.cookies.get("access_token")
    if not token:
        return ANONYMOUS
    return decode_access_token(token)
