"""
API Routes.
"""

from . import analytics, conversations, leads, scheduled, webhooks

__all__ = ["analytics", "conversations", "leads", "scheduled", "webhooks"]
