from fastapi import Depends, HTTPException, status

from escrow_market.models.user import CurrentUser
from escrow_market.models_sqlalchemy.models import UserRole
from escrow_market.services.auth import get_current_active_user
from escrow_market.utils.logger import logger


async def get_current_admin_user(current_user: CurrentUser = Depends(get_current_active_user)) -> CurrentUser:
    """
    Dependency to ensure only admin users can access certain endpoints
    """
    if current_user.role != UserRole.admin:
        logger.warning(f"Non-admin user attempted to access admin endpoint: {current_user.email}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user


# Alias used by routers for clarity
require_admin_user = get_current_admin_user
