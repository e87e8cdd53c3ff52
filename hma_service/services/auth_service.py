"""
Authentication service
Stateless JWT auth for the HTTP API; the single operator account comes from settings.
"""

import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from pydantic import BaseModel

from hma_service.config import settings

logger = logging.getLogger(__name__)


class TokenPayload(BaseModel):
    sub: str
    exp: int


class AuthService:
    """API user authentication"""

    @staticmethod
    def _hash_password(password: str) -> str:
        return hashlib.sha256(password.encode()).hexdigest()

    # ── Token ─────────────────────────────────────────────

    @staticmethod
    def create_access_token(username: str) -> str:
        expire = datetime.now(tz=timezone.utc) + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )
        payload = {"sub": username, "exp": expire}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    @staticmethod
    def verify_token(token: str) -> Optional[TokenPayload]:
        try:
            payload = jwt.decode(
                token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM]
            )
            return TokenPayload(sub=payload["sub"], exp=int(payload["exp"]))
        except jwt.ExpiredSignatureError:
            logger.debug("Token expired")
        except jwt.InvalidTokenError as exc:
            logger.debug(f"Invalid token: {exc}")
        return None

    # ── Users ─────────────────────────────────────────────

    def authenticate(self, username: str, password: str) -> Optional[dict]:
        """Check credentials against the configured operator account"""
        expected = self._hash_password(settings.API_PASSWORD)
        if username == settings.API_USERNAME and hmac.compare_digest(self._hash_password(password), expected):
            return {"username": username, "is_admin": True}
        logger.info(f"Rejected login for '{username}'")
        return None


# ── Module singleton ─────────────────────────────────────
_auth_service: Optional[AuthService] = None


def get_auth_service() -> AuthService:
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService()
    return _auth_service
