"""Shared columns for all entity models."""
import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseModel:
    """
    Mixin providing the identifier and audit timestamps.
    
    Attributes:
        id: Stable UUID identifier; entities reference each other by id only
        created_at: Creation timestamp (UTC)
        updated_at: Last modification timestamp (UTC)
    """
    
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    
    def __repr__(self):
        return f"<{self.__class__.__name__}(id='{self.id}')>"
