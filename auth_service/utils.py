"""Utility functions for the auth service: password hashing and JWT handling."""

import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from passlib.context import CryptContext
from jose import JWTError, jwt
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# --- Security settings ---
SECRET_KEY = os.getenv("JWT_SECRET_KEY")
if not SECRET_KEY:
    logger.warning("JWT_SECRET_KEY is not set. Using an insecure default key for development.")
    SECRET_KEY = "insecure_default_secret_key_change_me"

ALGORITHM = "HS256"

ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", 7))

ACCESS_TOKEN = "access"
REFRESH_TOKEN = "refresh"

# bcrypt with cost factor 10
pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=10,
)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Checks a plaintext password against a stored hash."""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hashes a plaintext password using bcrypt."""
    return pwd_context.hash(password)


# --- JWT helpers ---
def _create_token(data: Dict, token_type: str, expires_delta: timedelta) -> str:
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    to_encode.update({"token_type": token_type, "iat": now, "exp": now + expires_delta})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def create_access_token(data: Dict) -> str:
    """
    Builds a short-lived access token.

    Args:
        data: Claims to embed (e.g. {'sub': user_id, 'email': ...}).

    Returns:
        The encoded JWT string.
    """
    return _create_token(data, ACCESS_TOKEN, timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))


def create_refresh_token(data: Dict) -> str:
    """Builds a long-lived refresh token carrying the same claims as the access token."""
    return _create_token(data, REFRESH_TOKEN, timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))


def decode_token(token: str) -> Optional[Dict]:
    """
    Decodes and validates a JWT.

    Args:
        token: The JWT string to decode.

    Returns:
        The payload dict if the signature is valid and the token has not
        expired, otherwise None.
    """
    try:
        return jwt.decode(
            token,
            SECRET_KEY,
            algorithms=[ALGORITHM],
            options={"verify_aud": False}
        )
    except JWTError as e:
        logger.warning(f"Token decode failed: {e}")
        return None
