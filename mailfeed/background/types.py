"""Detached snapshots of persisted definitions used by the background core."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Account:
    id: str
    name: str
    host: str
    port: int
    username: str
    password: str = field(repr=False)
    use_tls: bool = True
    default_post_process_action: str = "mark_read"
    default_move_to_folder: Optional[str] = None
    poll_interval_minutes: Optional[int] = None
    watermark: Optional[datetime] = None
    enabled: bool = True


@dataclass(frozen=True)
class Rule:
    id: str
    account_id: str
    name: str
    folder: str = "INBOX"
    to_address: Optional[str] = None
    from_address: Optional[str] = None
    subject_contains: Optional[str] = None
    label: Optional[str] = None
    is_active: bool = True
    post_process_action: Optional[str] = None
    move_to_folder: Optional[str] = None
    inherit_account_defaults: bool = True


@dataclass(frozen=True)
class RetentionPolicy:
    max_items: Optional[int] = 100
    min_items: int = 0
    max_age_days: Optional[int] = 30


@dataclass(frozen=True)
class Feed:
    id: str
    rule_id: str
    title: str
    feed_type: str = "rss"
    is_active: bool = True
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)


@dataclass(frozen=True)
class FeedItemDraft:
    """Content for a feed item that may or may not exist yet."""

    dedupe_key: str
    title: str
    description: str
    link: Optional[str]
    author: Optional[str]
    pub_date: datetime
    body: str


@dataclass(frozen=True)
class ItemStamp:
    """The parts of a stored item retention needs."""

    id: str
    pub_date: datetime
