"""Mail account model."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from mailfeed.background.clock import utcnow

from .base import Base, new_id


class MailAccount(Base):
    """A polled mail account and its default post-processing."""

    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(255), unique=True, nullable=False)
    host = Column(String(255), nullable=False)
    port = Column(Integer, nullable=False, default=993)
    username = Column(String(255), nullable=False)
    password = Column(Text, nullable=False)  # Should be encrypted in production
    use_tls = Column(Boolean, default=True)
    enabled = Column(Boolean, default=True)

    # Defaults inherited by rules
    default_post_process_action = Column(String(32), nullable=False, default="mark_read")
    default_move_to_folder = Column(String(255), nullable=True)

    # Scheduling
    poll_interval_minutes = Column(Integer, nullable=True)  # None -> service-wide interval
    watermark = Column(DateTime, nullable=True)  # date of the last fully processed message

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    rules = relationship("MailRule", back_populates="account", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<MailAccount(name='{self.name}', host='{self.host}', enabled={self.enabled})>"
