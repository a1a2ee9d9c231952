from __future__ import annotations

from fastapi import Depends, Request

from app.context import get_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.platform.security.context import AuthContext
from app.platform.security.errors import MissingTenantError

SUPER_ADMIN_ROLE = "system.admin"


def get_crm_auth_context(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> AuthContext:
    """Trusted tenant and actor for CRM operations, taken from the verified token only."""

    if auth_user.sub == "anonymous" or not auth_user.company_id:
        raise MissingTenantError("crm")

    context = getattr(request.state, "context", None)
    correlation_id = get_correlation_id() or getattr(context, "request_id", None)
    roles = [str(item) for item in auth_user.roles]

    return AuthContext(
        user_id=auth_user.sub,
        tenant_id=auth_user.company_id,
        correlation_id=correlation_id,
        is_super_admin=SUPER_ADMIN_ROLE in {item.lower() for item in roles},
        roles=roles,
        locale=getattr(context, "locale", "en"),
    )
