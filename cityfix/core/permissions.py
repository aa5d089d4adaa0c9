"""
Role-Based Access Control
"""
from fastapi import HTTPException, Depends
import logging

from cityfix.core.auth import get_current_user
from cityfix.models.user_model import Role

logger = logging.getLogger(__name__)


def require_role(*allowed_roles: Role):
    """
    Dependency to require specific role(s)
    """
    allowed = [role.value for role in allowed_roles]

    async def role_dependency(current_user: dict = Depends(get_current_user)):
        user_role = current_user.get("role", "citizen")

        if user_role not in allowed:
            logger.warning(
                f"Permission denied: {current_user.get('email')} "
                f"(role: {user_role}) needs {', '.join(allowed)}"
            )
            raise HTTPException(
                status_code=403,
                detail=f"Access denied. Required role: {', '.join(allowed)}"
            )

        return current_user

    return role_dependency
