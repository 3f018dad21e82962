"""Group model."""
from sqlalchemy import Boolean, Column, ForeignKey, String, Text, Uuid

from tiktok_accounts.database import Base
from tiktok_accounts.models.base import BaseModel


class Group(Base, BaseModel):
    """
    Group of TikTok accounts.
    
    At most one Manager is assigned at a time through managed_by;
    reassigning replaces the previous manager and immediately moves
    scope with it.
    
    Attributes:
        name: Display name
        description: Free-form description
        created_by: User who created the group (grants no scope by itself)
        managed_by: Current manager, if any
        is_active: Whether the group is active
    """
    
    __tablename__ = "groups"
    
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    created_by = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", use_alter=True, name="fk_groups_created_by"),
        nullable=False
    )
    managed_by = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", use_alter=True, name="fk_groups_managed_by"),
        nullable=True,
        index=True
    )
    is_active = Column(Boolean, default=True, nullable=False)
    
    def __repr__(self):
        return f"<Group(name='{self.name}', managed_by='{self.managed_by}')>"
