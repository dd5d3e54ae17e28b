from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from escrow_market.config import settings
from escrow_market.models.user import CurrentUser
from escrow_market.models_sqlalchemy import get_db
from escrow_market.models_sqlalchemy.models import User, UserRole
from escrow_market.utils.logger import logger

security = HTTPBearer()


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.ALGORITHM)
    return encoded_jwt


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> CurrentUser:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        token = credentials.credentials
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
    except JWTError as e:
        logger.error(f"JWT validation error: {str(e)}")
        raise credentials_exception

    user = db.get(User, user_id)
    if user is None:
        logger.error(f"User not found for token: {user_id}")
        raise credentials_exception

    return CurrentUser.model_validate(user)


async def get_current_active_user(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current_user.is_active:
        logger.warning(f"Inactive user attempted access: {current_user.email}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is inactive"
        )
    return current_user


def require_roles(*roles: UserRole):
    """Dependency factory: the active user must hold one of ``roles``."""

    async def _dependency(current_user: CurrentUser = Depends(get_current_active_user)) -> CurrentUser:
        if current_user.role not in roles:
            logger.warning(
                f"User {current_user.email} with role {current_user.role.value} denied; requires {[r.value for r in roles]}"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )
        return current_user

    return _dependency


require_customer = require_roles(UserRole.customer)
require_seller = require_roles(UserRole.seller)
