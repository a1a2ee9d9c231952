from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from app.platform.security.context import AuthContext
from app.platform.security.rls import apply_tenant_filter, require_tenant


class BaseRepository:
    resource = ""

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext, *, include_deleted: bool = False) -> Select[Any]:
        return apply_tenant_filter(query, self.resource, ctx, include_deleted=include_deleted)

    def tenant_for_write(self, ctx: AuthContext) -> str:
        return require_tenant(self.resource, ctx)
