"""
JWT identity binding for the PHI Vault HTTP surface.

The invoking principal is always taken from a verified bearer token, never
from the request body. Tokens are verified here but issued elsewhere (an
identity provider); create_jwt_token exists for development and tests.

Claims:
- sub:  principal id (required)
- role: role the principal acts under (optional); it only selects among
        roles the ledger already grants, it never grants one
- exp:  expiry (required)
"""

import os
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from phivault.app.services.access_control import Role

# Use RS256 with the identity provider's public key in production
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

security = HTTPBearer()


class Identity(BaseModel):
    """Authenticated principal extracted from a verified JWT."""

    sub: str
    role: Optional[Role] = None
    exp: Optional[int] = None


def _unauthorized(error: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": error, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_jwt(token: str) -> dict:
    """
    Decode and validate a JWT.

    Raises:
        HTTPException: 401 if the token is invalid, expired or malformed
    """
    try:
        return jwt.decode(
            token,
            JWT_SECRET_KEY,
            algorithms=[JWT_ALGORITHM],
            options={
                "verify_signature": True,
                "verify_exp": True,
                "require_exp": True,
                "require_sub": True,
            },
        )
    except JWTError:
        raise _unauthorized("invalid_token", "Token validation failed")


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Identity:
    """
    FastAPI dependency: the authenticated principal of the request.

    Raises:
        HTTPException: 401 if the token is invalid or a claim is missing or unknown
    """
    payload = decode_jwt(credentials.credentials)

    sub = payload.get("sub")
    if not sub:
        raise _unauthorized("missing_claim", "Token missing 'sub' claim")

    role = payload.get("role")
    if role is not None and role not in Role.__members__:
        raise _unauthorized("invalid_role", "Token carries an unknown role")

    return Identity(sub=sub, role=Role(role) if role else None, exp=payload.get("exp"))


def create_jwt_token(sub: str, role: Optional[str] = None, expires_in_seconds: int = 3600) -> str:
    """
    Create a JWT for development and testing.

    In production tokens come from the identity provider.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "exp": int(now.timestamp()) + expires_in_seconds,
        "iat": int(now.timestamp()),
    }
    if role:
        payload["role"] = role
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)
