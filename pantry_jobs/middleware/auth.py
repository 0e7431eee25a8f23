"""
Identity resolution for the job routes.

Accepts either a signed bearer token (HS256, subject = owner id) or, for
local/anonymous sessions, an X-User-ID header generated by the frontend.
"""
from typing import Optional

import jwt
from fastapi import Header, HTTPException

from pantry_jobs.config import get_settings
from pantry_jobs.utils.logger import logger

ANONYMOUS_PREFIX = "user_"


def resolve_owner(authorization: Optional[str] = None, x_user_id: Optional[str] = None) -> str:
    """Map request credentials to an owner id. Raises HTTPException(401) when unauthenticated."""
    if authorization:
        parts = authorization.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            raise HTTPException(
                status_code=401,
                detail="Invalid authorization header format. Expected: Bearer <token>",
                headers={"WWW-Authenticate": "Bearer"},
            )
        secret = get_settings().jwt_secret
        if not secret:
            raise HTTPException(status_code=401, detail="Token authentication is not configured")
        try:
            claims = jwt.decode(parts[1], secret, algorithms=["HS256"], options={"require": ["sub"]})
        except jwt.ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired", headers={"WWW-Authenticate": "Bearer"})
        except jwt.InvalidTokenError as e:
            logger.info(f"[Auth] Rejected token: {e}")
            raise HTTPException(status_code=401, detail="Invalid token", headers={"WWW-Authenticate": "Bearer"})
        return str(claims["sub"])

    if x_user_id:
        if not x_user_id.startswith(ANONYMOUS_PREFIX) or len(x_user_id) <= len(ANONYMOUS_PREFIX):
            raise HTTPException(status_code=400, detail="Invalid user ID format")
        return x_user_id

    raise HTTPException(
        status_code=401,
        detail="Authentication required. Provide a Bearer token or X-User-ID header.",
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_owner_id(
    authorization: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
) -> str:
    """
    FastAPI dependency returning the requesting owner's id.

    Usage:
        @router.get("/endpoint")
        async def endpoint(owner_id: str = Depends(get_owner_id)):
            ...
    """
    return resolve_owner(authorization, x_user_id)
