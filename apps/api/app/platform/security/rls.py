from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from app.platform.security.context import AuthContext
from app.platform.security.errors import MissingTenantError


def is_admin_bypass(ctx: AuthContext) -> bool:
    if ctx.is_super_admin:
        return True
    role_set = {item.lower() for item in ctx.roles}
    return "admin" in role_set or "system.admin" in role_set


def require_tenant(resource: str, ctx: AuthContext) -> str:
    if not ctx.tenant_id:
        raise MissingTenantError(resource)
    return ctx.tenant_id


def apply_tenant_filter(query: Select[Any], resource: str, ctx: AuthContext, *, include_deleted: bool = False) -> Select[Any]:
    """Restrict every entity in the query exposing company_id to the caller's tenant.

    Admins are not exempt: tenant isolation holds for every caller.
    """

    tenant_id = require_tenant(resource, ctx)
    for description in query.column_descriptions:
        model = description.get("entity")
        if model is None:
            continue
        if hasattr(model, "company_id"):
            query = query.where(getattr(model, "company_id") == tenant_id)
        if not include_deleted and hasattr(model, "deleted_at"):
            query = query.where(getattr(model, "deleted_at").is_(None))
    return query
