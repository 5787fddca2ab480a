# auth.py
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError

from .config import settings

# Security scheme; routes that also accept invitation tokens use the optional variants
security = HTTPBearer(auto_error=False)


def decode_token(token: str) -> dict:
    """
    Verifies the bearer JWT and returns its claims.
    """
    if not settings.JWT_SECRET:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="JWT Secret not configured"
        )

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if payload.get("sub") is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


def get_claims(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> dict:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return decode_token(credentials.credentials)


def get_current_user(claims: dict = Depends(get_claims)) -> str:
    """Returns the user_id (sub) of the authenticated caller."""
    return claims["sub"]


def get_user_email(claims: dict = Depends(get_claims)) -> Optional[str]:
    return claims.get("email")


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Optional[str]:
    """Like get_current_user, but None when no bearer token was sent."""
    if credentials is None:
        return None
    return decode_token(credentials.credentials)["sub"]


def require_identity(current_user: Optional[str], invitation_token: Optional[str]) -> None:
    """For routes open to both bearer tokens and invitation tokens."""
    if not current_user and not invitation_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token or invitation token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
