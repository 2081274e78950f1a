import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from .config import JWT_ALGORITHM, SECRET_KEY
from .database import get_db
from .models import User

logger = logging.getLogger(__name__)

security = HTTPBearer()

ACCESS_TOKEN_TTL = timedelta(hours=12)


def create_access_token(user_id: int, role: str, expires_in: Optional[timedelta] = None) -> str:
    """Issue a bearer token (used by tooling and tests; login lives elsewhere)"""
    payload = {
        "sub": str(user_id),
        "role": role,
        "exp": datetime.utcnow() + (expires_in or ACCESS_TOKEN_TTL),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"⚠️ Token verification failed: {e}")
        raise HTTPException(status_code=401, detail="Invalid token") from e


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Get current user from the bearer token"""

    if not credentials:
        logger.error("❌ No credentials provided")
        raise HTTPException(
            status_code=401,
            detail="Not authenticated. Please provide a valid Bearer token in the Authorization header.",
        )

    token = credentials.credentials
    if len(token.split(".")) != 3:
        logger.warning(f"⚠️ Malformed token received, length: {len(token)}")
        raise HTTPException(
            status_code=401, detail="Invalid token format. Expected a valid JWT token."
        )

    claims = decode_access_token(token)
    user_id = claims.get("sub") or claims.get("id")
    if not user_id:
        logger.error(f"❌ Token missing user ID claim. Available claims: {list(claims.keys())}")
        raise HTTPException(status_code=401, detail="Invalid token claims")

    try:
        user = db.query(User).filter(User.id == int(user_id)).first()
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token claims") from None

    if not user:
        logger.warning(f"⚠️ Token for unknown user {user_id}")
        raise HTTPException(status_code=401, detail="User not found")

    logger.debug(f"✅ User authenticated: {user.id} ({user.role})")
    return user


async def require_patient(user: User = Depends(get_current_user)) -> User:
    if user.role != "patient":
        logger.warning(f"⚠️ User {user.id} ({user.role}) attempted a patient-only action")
        raise HTTPException(status_code=403, detail="Not authorized")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != "admin":
        logger.warning(f"⚠️ User {user.id} ({user.role}) attempted an admin-only action")
        raise HTTPException(status_code=403, detail="Not authorized")
    return user
