"""AnalyticsSnapshot model."""
from sqlalchemy import BigInteger, Column, Date, DateTime, ForeignKey, Integer, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from tiktok_accounts.database import Base
from tiktok_accounts.models.base import BaseModel, utcnow


class AnalyticsSnapshot(Base, BaseModel):
    """
    Daily metric snapshot of one TikTok account.
    
    **UNIQUENESS RULES:**
    - At most one snapshot per (account_id, snapshot_date)
    - Same-day ingestion replaces the metric fields in place
    - Snapshots of earlier dates are never touched again
    - Only SnapshotIngestionService writes snapshots
    
    Attributes:
        account_id: Owning TikTok account
        snapshot_date: UTC calendar day of capture (dedup key)
        follower_count: Followers at capture time
        following_count: Accounts followed at capture time
        total_likes: Cumulative likes
        video_count: Published videos
        daily_uploads: Videos uploaded on snapshot_date
        captured_at: When the sample was taken
    """
    
    __tablename__ = "analytics_snapshots"
    __table_args__ = (
        UniqueConstraint("account_id", "snapshot_date", name="uq_snapshot_account_date"),
    )
    
    account_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("tiktok_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    snapshot_date = Column(Date, nullable=False, index=True)
    follower_count = Column(BigInteger, nullable=False, default=0)
    following_count = Column(BigInteger, nullable=False, default=0)
    total_likes = Column(BigInteger, nullable=False, default=0)
    video_count = Column(BigInteger, nullable=False, default=0)
    daily_uploads = Column(Integer, nullable=False, default=0)
    captured_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    
    # Relationships
    account = relationship("TikTokAccount", back_populates="snapshots")
    
    def __repr__(self):
        return (
            f"<AnalyticsSnapshot(account_id='{self.account_id}', "
            f"snapshot_date='{self.snapshot_date}', followers={self.follower_count})>"
        )
