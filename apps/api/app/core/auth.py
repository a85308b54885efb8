from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)
    organization_id: str | None = None


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.removeprefix("Bearer ").strip() if auth_header.startswith("Bearer ") else ""


def decode_bearer_claims(request: Request) -> dict[str, Any] | None:
    """Claims of a valid bearer token, or ``None`` when absent or not verifiable."""
    token = bearer_token(request)
    if not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(request: Request) -> AuthUser:
    claims = decode_bearer_claims(request)
    if claims is None:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])

    subject = str(claims.get("sub") or ANONYMOUS_SUBJECT)
    raw_roles = claims.get("roles")
    roles = [str(role) for role in raw_roles] if isinstance(raw_roles, list) else ["user"]
    organization_id = str(claims["org_id"]) if claims.get("org_id") else None

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
        if organization_id:
            context.organization_id = organization_id
    return AuthUser(sub=subject, roles=roles, organization_id=organization_id)
