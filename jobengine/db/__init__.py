"""
Database module.
Contains database connection, models, and repository implementations.
"""

from jobengine.db.connection import (
    AsyncSessionLocal,
    close_db,
    get_engine,
    get_session_context,
    init_db,
)
from jobengine.db.models import Base, Job, Webhook, WebhookDelivery

__all__ = [
    "get_session_context",
    "get_engine",
    "init_db",
    "close_db",
    "AsyncSessionLocal",
    "Job",
    "Webhook",
    "WebhookDelivery",
    "Base",
]
