from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token
from models import UserRole

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token.

    Tokens are issued by the platform's auth service and carry
    ``user_id``, ``email`` and ``role`` claims.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload:
        return None

    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def require_admin(request: Request) -> dict:
    """Require admin role."""
    user = await require_auth(request)
    if user.get("role") != UserRole.ROLE_ADMIN.value:
        logger.warning(f"Admin route denied for user {user.get('user_id')} ({request.url.path})")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user

def is_admin(user: dict) -> bool:
    return user.get("role") == UserRole.ROLE_ADMIN.value

def ensure_self_or_admin(user: dict, user_id: str) -> None:
    """Non-admin callers may only act on their own user id."""
    if is_admin(user):
        return
    if user.get("user_id") != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot act on behalf of another user"
        )
