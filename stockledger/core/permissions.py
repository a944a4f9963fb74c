from collections.abc import Callable

from fastapi import Depends, HTTPException, status

from stockledger.core.security_current import get_current_user
from stockledger.models.user import User

USER_ROLES = ("admin", "staff", "viewer")


def require_roles(*allowed_roles: str) -> Callable[[User], User]:
    normalized_allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not normalized_allowed:
        raise ValueError("At least one allowed role is required")
    unknown = normalized_allowed - set(USER_ROLES)
    if unknown:
        raise ValueError(f"Unknown role(s): {', '.join(sorted(unknown))}")

    def dependency(user: User = Depends(get_current_user)) -> User:
        current_role = (user.role or "").lower()
        if current_role not in normalized_allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role for this action",
            )
        return user

    return dependency


require_stock_writer = require_roles("admin", "staff")
require_admin = require_roles("admin")
