"""
Models Package

Imports all SQLAlchemy models for application use.
"""

from tiktok_accounts.models.base import BaseModel
from tiktok_accounts.models.user import User, Role
from tiktok_accounts.models.group import Group
from tiktok_accounts.models.tiktok_account import TikTokAccount
from tiktok_accounts.models.analytics_snapshot import AnalyticsSnapshot
from tiktok_accounts.models.idempotency import IdempotencyKey, DecisionTrace, RequestStatus

__all__ = [
    'BaseModel',
    'User',
    'Role',
    'Group',
    'TikTokAccount',
    'AnalyticsSnapshot',
    'IdempotencyKey',
    'DecisionTrace',
    'RequestStatus',
]
