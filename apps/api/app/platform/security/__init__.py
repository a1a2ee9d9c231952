from app.platform.security.context import AuthContext
from app.platform.security.errors import AuthorizationError, MissingTenantError
from app.platform.security.repository import BaseRepository
from app.platform.security.rls import apply_tenant_filter, is_admin_bypass, require_tenant

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "MissingTenantError",
    "BaseRepository",
    "apply_tenant_filter",
    "is_admin_bypass",
    "require_tenant",
]
