"""
Identity Provider

Verifies the bearer credential presented when a client connects and turns it
into a stable participant identity with a display name.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt as pyjwt

from .config import get_config


logger = logging.getLogger("auth.identity")


class AuthenticationError(Exception):
    """Raised when a bearer credential is missing or invalid"""
    pass


@dataclass(frozen=True)
class Identity:
    """Authenticated user behind a connection"""
    user_id: str
    name: str

    @property
    def avatar(self) -> str:
        return self.name[:1].upper() if self.name else "?"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.user_id, "name": self.name, "avatar": self.avatar}


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """
    Extract the credential from an ``Authorization: Bearer <token>`` header

    Returns:
        Optional[str]: The token, or None if the header is absent or malformed
    """
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class JWTIdentityProvider:
    """
    Verifies HMAC-signed JWT bearer tokens

    The token must carry the user id in ``id`` (or ``sub``) and may carry a
    display name in ``name``.
    """

    def __init__(self, secret: Optional[str] = None, algorithm: Optional[str] = None):
        config = get_config()
        self.secret = secret or config.jwt_secret
        self.algorithm = algorithm or config.jwt_algorithm

    def authenticate(self, token: Optional[str]) -> Identity:
        """
        Validate a bearer token

        Raises:
            AuthenticationError: If the token is absent, expired or malformed
        """
        if not token:
            raise AuthenticationError("Token not provided")

        try:
            claims = pyjwt.decode(token, self.secret, algorithms=[self.algorithm])
        except pyjwt.ExpiredSignatureError:
            raise AuthenticationError("Token expired")
        except pyjwt.InvalidTokenError as e:
            logger.debug(f"Rejected bearer token: {e}")
            raise AuthenticationError("Invalid token")

        user_id = claims.get("id") or claims.get("sub")
        if not user_id:
            raise AuthenticationError("Token has no user id")

        name = claims.get("name") or f"Player {str(user_id)[:6]}"
        return Identity(user_id=str(user_id), name=str(name))

    def issue_token(self, user_id: str, name: str, expires_in: int = 3600) -> str:
        """Sign a token for a user (development and test helper)"""
        payload = {
            "id": user_id,
            "name": name,
            "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        }
        return pyjwt.encode(payload, self.secret, algorithm=self.algorithm)


