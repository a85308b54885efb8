from collections.abc import Awaitable, Callable

from fastapi import Depends, HTTPException, status

from app.core.auth import AuthUser, get_current_user


SUPERUSER_ROLE = "system.admin"


def missing_permissions(user: AuthUser, required: tuple[str, ...]) -> list[str]:
    """Permissions in ``required`` not granted to ``user``, in declaration order."""
    if SUPERUSER_ROLE in user.roles:
        return []
    granted = set(user.roles)
    return [permission for permission in dict.fromkeys(required) if permission not in granted]


def require_permissions(*permissions: str) -> Callable[[AuthUser], Awaitable[AuthUser]]:
    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        missing = missing_permissions(user, permissions)
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing permissions: {', '.join(missing)}",
            )
        return user

    return checker
