from __future__ import annotations


class AuthorizationError(Exception):
    """Raised when the caller context cannot be scoped to a tenant."""


class MissingTenantError(AuthorizationError):
    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Tenant scope required for resource '{resource}'")
