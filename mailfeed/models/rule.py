"""Mail rule model."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from mailfeed.background.clock import utcnow

from .base import Base, new_id


class MailRule(Base):
    """Predicates selecting messages of one folder into feeds."""

    __tablename__ = "rules"

    id = Column(String(36), primary_key=True, default=new_id)
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    folder = Column(String(255), nullable=False, default="INBOX")

    # Predicates, at least one required
    to_address = Column(String(500), nullable=True)
    from_address = Column(String(500), nullable=True)
    subject_contains = Column(String(500), nullable=True)
    label = Column(String(255), nullable=True)

    is_active = Column(Boolean, default=True)

    # Post-processing override
    post_process_action = Column(String(32), nullable=True)
    move_to_folder = Column(String(255), nullable=True)
    inherit_account_defaults = Column(Boolean, default=True)

    created_at = Column(DateTime, default=utcnow)  # sub-second; first matching rule wins by this order

    account = relationship("MailAccount", back_populates="rules")
    feeds = relationship("Feed", back_populates="rule", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<MailRule(name='{self.name}', folder='{self.folder}', active={self.is_active})>"
