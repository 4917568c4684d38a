from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Union, Optional
import secrets
import string

from jose import JWTError, jwt
import structlog

from .config import settings
from .exceptions import AuthError, InternalError

logger = structlog.get_logger()

ROLE_NGO = "ngo"
ROLE_HOSPITAL = "hospital"
ROLE_ADMIN = "admin"
ROLE_USER = "user"

VALID_ROLES = (ROLE_NGO, ROLE_HOSPITAL, ROLE_ADMIN, ROLE_USER)

CONFIRMATION_CODE_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, passed explicitly into every core operation."""

    entity_id: str
    role: str

    @property
    def is_ngo(self) -> bool:
        return self.role == ROLE_NGO

    @property
    def is_hospital(self) -> bool:
        return self.role == ROLE_HOSPITAL


def create_access_token(
    subject: Union[str, Any],
    role: str,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT access token.

    Args:
        subject: The entity id to encode in the token
        role: One of ngo, hospital, admin, user
        expires_delta: Token expiration time delta

    Returns:
        str: The encoded JWT token
    """
    if role not in VALID_ROLES:
        raise ValueError(f"Unknown role: {role}")

    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {
        "exp": expire,
        "sub": str(subject),
        "role": role,
        "iat": datetime.utcnow(),
        "type": "access"
    }

    try:
        return jwt.encode(
            to_encode,
            settings.SECRET_KEY,
            algorithm=settings.ALGORITHM
        )
    except Exception as e:
        logger.error("Failed to create access token", error=str(e))
        raise InternalError("Could not create access token")


def verify_token(token: str) -> dict:
    """
    Verify and decode a JWT token.

    Raises:
        AuthError: If the token is invalid, expired or incomplete
    """
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM]
        )
    except JWTError as e:
        logger.warning("JWT verification failed", error=str(e))
        raise AuthError("Invalid or expired access token")

    if payload.get("exp") is None:
        raise AuthError("Token missing expiration")

    if not payload.get("sub"):
        raise AuthError("Token missing subject")

    return payload


def principal_from_token(token: str) -> Principal:
    """Decode a bearer token into the acting principal."""
    payload = verify_token(token)
    role = payload.get("role") or ROLE_USER
    if role not in VALID_ROLES:
        raise AuthError("Token carries an unknown role")
    return Principal(entity_id=payload["sub"], role=role)


def generate_confirmation_code(length: int = 6) -> str:
    """Generate a delivery confirmation code of upper-case letters and digits."""
    return ''.join(secrets.choice(CONFIRMATION_CODE_ALPHABET) for _ in range(length))
