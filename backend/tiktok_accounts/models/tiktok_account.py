"""TikTokAccount model."""
from sqlalchemy import JSON, Boolean, Column, Date, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import relationship

from tiktok_accounts.database import Base
from tiktok_accounts.models.base import BaseModel


class TikTokAccount(Base, BaseModel):
    """
    A managed TikTok account.
    
    Each account belongs to exactly one group at a time; moving it is a
    single group_id change. Its snapshots are deleted with it.
    
    Attributes:
        account_name: Unique TikTok handle
        group_id: Owning group (required)
        created_by: User who registered the account
        nickname: Display name reported by TikTok
        uid: External TikTok user id
        location: Region reported by TikTok
        registration_date: When the TikTok account was registered
        account_owner: Real-world owner
        contact_info: Owner contact details
        responsible_person: Staff member responsible for the account
        notes: Free-form notes
        tags: Free-form JSON tags
        is_active: Whether the account is active
    """
    
    __tablename__ = "tiktok_accounts"
    
    account_name = Column(String(100), unique=True, index=True, nullable=False)
    group_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("groups.id"),
        nullable=False,
        index=True
    )
    created_by = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    
    # Slowly-changing profile fields (refreshed by ingestion)
    nickname = Column(String, nullable=True)
    uid = Column(String, nullable=True, index=True)
    location = Column(String, nullable=True)
    registration_date = Column(Date, nullable=True)
    
    # Contact metadata
    account_owner = Column(String, nullable=True)
    contact_info = Column(String, nullable=True)
    responsible_person = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    tags = Column(JSON, nullable=True)
    
    is_active = Column(Boolean, default=True, nullable=False)
    
    # Relationships
    snapshots = relationship(
        "AnalyticsSnapshot",
        back_populates="account",
        cascade="all, delete-orphan",
        passive_deletes=True
    )
    
    def __repr__(self):
        return f"<TikTokAccount(account_name='{self.account_name}', group_id='{self.group_id}')>"
