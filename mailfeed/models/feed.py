"""Feed and feed item models."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from mailfeed.background.clock import utcnow

from .base import Base, new_id


class Feed(Base):
    """A syndication feed filled by one rule."""

    __tablename__ = "feeds"
    __table_args__ = (
        CheckConstraint("min_items IS NULL OR max_items IS NULL OR min_items <= max_items", name="ck_feed_retention"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    rule_id = Column(String(36), ForeignKey("rules.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    feed_type = Column(String(8), nullable=False, default="rss")  # rss or atom
    is_active = Column(Boolean, default=True)

    # Retention
    max_items = Column(Integer, nullable=True, default=100)
    min_items = Column(Integer, nullable=True, default=10)
    max_age_days = Column(Integer, nullable=True, default=30)

    created_at = Column(DateTime, default=utcnow)

    rule = relationship("MailRule", back_populates="feeds")
    items = relationship("FeedItem", back_populates="feed", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Feed(title='{self.title}', type='{self.feed_type}')>"


class FeedItem(Base):
    """One message rendered into one feed."""

    __tablename__ = "feed_items"
    __table_args__ = (UniqueConstraint("feed_id", "dedupe_key", name="uix_feed_item_dedupe"),)

    id = Column(String(36), primary_key=True, default=new_id)
    feed_id = Column(String(36), ForeignKey("feeds.id", ondelete="CASCADE"), nullable=False, index=True)
    dedupe_key = Column(String(512), nullable=False)

    title = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    link = Column(Text, nullable=True)
    author = Column(String(500), nullable=True)
    body = Column(Text, nullable=True)

    pub_date = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=func.now())

    feed = relationship("Feed", back_populates="items")

    def __repr__(self):
        return f"<FeedItem(title='{self.title}', pub_date='{self.pub_date}')>"
