from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    company_id: str | None = None
    claims: dict[str, object] = field(default_factory=dict)


def decode_token(token: str) -> dict[str, object] | None:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""


async def get_current_user(request: Request) -> AuthUser:
    token = bearer_token(request)
    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    payload = decode_token(token)
    if payload is None:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    company_raw = payload.get("company_id")
    company_id = str(company_raw) if company_raw is not None else None

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
        context.tenant_id = company_id
    return AuthUser(sub=subject, roles=[str(role) for role in roles], company_id=company_id, claims=payload)
