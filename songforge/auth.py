"""
Session/Auth provider: bcrypt password hashes and JWT bearer tokens.

Route handlers depend on ``require_auth`` (or ``require_admin``) and receive
the user row; the pipeline never authenticates anything itself.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import bcrypt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import Settings

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        return False


def get_password_hash(password: str) -> str:
    # bcrypt has a 72 byte limit for passwords
    if len(password.encode("utf-8")) > 72:
        raise HTTPException(status_code=400, detail="Password is too long (max 72 characters)")
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def create_access_token(settings: Settings, data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(days=settings.access_token_expire_days))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_token(settings: Settings, token: str) -> Optional[str]:
    """Decode JWT token and return user_id if valid"""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        return None
    return payload.get("sub")


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Optional[Dict]:
    """Get current user from JWT token (returns None if not authenticated)"""
    if credentials is None:
        return None

    services = request.app.state.services
    user_id = decode_token(services.settings, credentials.credentials)
    if user_id is None:
        logger.debug("[Auth] Rejected invalid or expired token")
        return None
    return services.store.get_user(user_id)


async def require_auth(current_user: Optional[Dict] = Depends(get_current_user)) -> Dict:
    """Require authentication - raises 401 if not authenticated"""
    if current_user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return current_user


async def require_admin(request: Request, current_user: Dict = Depends(require_auth)) -> Dict:
    if not request.app.state.services.settings.is_admin(current_user["email"]):
        raise HTTPException(status_code=403, detail="Forbidden")
    return current_user
