"""
Repository Layer for Prompt Generator SaaS

Exports all repository classes for dependency injection.
"""

from app.infrastructure.db.repositories.base_repository import (
    BaseRepository,
    as_uuid,
)
from app.infrastructure.db.repositories.user_repository import (
    UserRepository,
)
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from app.infrastructure.db.repositories.processed_event_repository import (
    ProcessedEventRepository,
)


__all__ = [
    # Base
    "BaseRepository",
    "as_uuid",
    # Repositories
    "UserRepository",
    "SubscriptionRepository",
    "ProcessedEventRepository",
]
