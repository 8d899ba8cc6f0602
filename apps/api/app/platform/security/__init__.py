from app.platform.security.context import Admin, APIKey, AuthContext, AuthScheme, EndUser, auth_scheme, principal_label
from app.platform.security.errors import AccessError, AuthError
from app.platform.security.policies import (
    AccessPolicy,
    DbPolicyResolver,
    InMemoryPolicyResolver,
    PolicyResolver,
    TablePolicy,
    is_system_table,
)
from app.platform.security.rls import RowFilter, authorize, authorize_object_key
from app.platform.security.scopes import API_SCOPES, Action, Scope, ScopeResource

__all__ = [
    "Admin",
    "APIKey",
    "AuthContext",
    "AuthScheme",
    "EndUser",
    "auth_scheme",
    "principal_label",
    "AccessError",
    "AuthError",
    "AccessPolicy",
    "DbPolicyResolver",
    "InMemoryPolicyResolver",
    "PolicyResolver",
    "TablePolicy",
    "is_system_table",
    "RowFilter",
    "authorize",
    "authorize_object_key",
    "API_SCOPES",
    "Action",
    "Scope",
    "ScopeResource",
]
