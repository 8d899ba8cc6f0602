"""Import every model module so ``Base.metadata`` knows all service-owned tables."""

from app.auth.models import AdminAccount, APIKeyRecord, OAuthProviderCredential, User, UserSession
from app.hooks.models import Hook, QueuedEvent, RealtimeSubscription
from app.platform.security.models import TablePolicyRecord
from app.push.models import NotificationLog, NotificationRule, PushSubscription
from app.queries.models import CustomQuery, QueryExecutionLog

__all__ = [
    "AdminAccount",
    "APIKeyRecord",
    "CustomQuery",
    "Hook",
    "NotificationLog",
    "NotificationRule",
    "OAuthProviderCredential",
    "PushSubscription",
    "QueryExecutionLog",
    "QueuedEvent",
    "RealtimeSubscription",
    "TablePolicyRecord",
    "User",
    "UserSession",
]
