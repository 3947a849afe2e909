"""Persistence boundary for the background core.

Everything handed out is a detached dataclass snapshot so workers never hold
sessions across awaits.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from mailfeed.background.errors import ConfigError
from mailfeed.background.matcher import validate_rule_predicates
from mailfeed.background.types import Account, Feed, FeedItemDraft, ItemStamp, RetentionPolicy, Rule
from mailfeed.database.connection import SessionLocal, get_db_session
from mailfeed.mail.types import ActionKind
from mailfeed.models.account import MailAccount
from mailfeed.models.feed import Feed as FeedRow
from mailfeed.models.feed import FeedItem
from mailfeed.models.rule import MailRule

logger = logging.getLogger(__name__)

FEED_TYPES = ("rss", "atom")


def _account(row: MailAccount) -> Account:
    return Account(
        id=row.id,
        name=row.name,
        host=row.host,
        port=row.port,
        username=row.username,
        password=row.password,
        use_tls=bool(row.use_tls),
        default_post_process_action=row.default_post_process_action or ActionKind.MARK_READ.value,
        default_move_to_folder=row.default_move_to_folder,
        poll_interval_minutes=row.poll_interval_minutes,
        watermark=row.watermark,
        enabled=bool(row.enabled),
    )


def _rule(row: MailRule) -> Rule:
    return Rule(
        id=row.id,
        account_id=row.account_id,
        name=row.name,
        folder=row.folder,
        to_address=row.to_address,
        from_address=row.from_address,
        subject_contains=row.subject_contains,
        label=row.label,
        is_active=bool(row.is_active),
        post_process_action=row.post_process_action,
        move_to_folder=row.move_to_folder,
        inherit_account_defaults=bool(row.inherit_account_defaults),
    )


def _feed(row: FeedRow) -> Feed:
    return Feed(
        id=row.id,
        rule_id=row.rule_id,
        title=row.title,
        feed_type=row.feed_type,
        is_active=bool(row.is_active),
        retention=RetentionPolicy(
            max_items=row.max_items,
            min_items=row.min_items or 0,
            max_age_days=row.max_age_days,
        ),
    )


def validate_retention(max_items: Optional[int], min_items: Optional[int], max_age_days: Optional[int]) -> None:
    if max_items is not None and max_items < 1:
        raise ConfigError("max_items must be at least 1")
    if min_items is not None and min_items < 0:
        raise ConfigError("min_items must not be negative")
    if max_age_days is not None and max_age_days < 1:
        raise ConfigError("max_age_days must be at least 1")
    if max_items is not None and min_items is not None and min_items > max_items:
        raise ConfigError("min_items must not exceed max_items")


class FeedRepository:
    """SQLAlchemy-backed store for accounts, rules, feeds, items and watermarks."""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    def _session(self):
        return get_db_session(self.session_factory)

    # Accounts

    def list_accounts(self, enabled_only: bool = True) -> List[Account]:
        with self._session() as db:
            query = db.query(MailAccount)
            if enabled_only:
                query = query.filter(MailAccount.enabled == True)  # noqa: E712
            return [_account(row) for row in query.order_by(MailAccount.created_at, MailAccount.id).all()]

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._session() as db:
            row = db.get(MailAccount, account_id)
            return _account(row) if row else None

    def count_accounts(self) -> int:
        with self._session() as db:
            return db.query(func.count(MailAccount.id)).filter(MailAccount.enabled == True).scalar() or 0  # noqa: E712

    def create_account(
        self,
        name: str,
        host: str,
        username: str,
        password: str,
        port: int = 993,
        use_tls: bool = True,
        default_post_process_action: str = ActionKind.MARK_READ.value,
        default_move_to_folder: Optional[str] = None,
        poll_interval_minutes: Optional[int] = None,
        enabled: bool = True,
    ) -> Account:
        if not name or not host or not username:
            raise ConfigError("Account name, host and username are required")
        if not 0 < port < 65536:
            raise ConfigError(f"Invalid port {port}")
        if poll_interval_minutes is not None and poll_interval_minutes <= 0:
            raise ConfigError("poll_interval_minutes must be greater than 0")
        action = ActionKind.parse(default_post_process_action)
        if action is ActionKind.MOVE_TO_FOLDER and not default_move_to_folder:
            raise ConfigError("move_to_folder needs a default_move_to_folder")

        with self._session() as db:
            if db.query(MailAccount).filter(MailAccount.name == name).first():
                raise ConfigError(f"Account '{name}' already exists")
            row = MailAccount(
                name=name,
                host=host,
                port=port,
                username=username,
                password=password,
                use_tls=use_tls,
                default_post_process_action=action.value,
                default_move_to_folder=default_move_to_folder,
                poll_interval_minutes=poll_interval_minutes,
                enabled=enabled,
            )
            db.add(row)
            db.flush()
            logger.info(f"Created account: {name}")
            return _account(row)

    def delete_account(self, account_id: str) -> bool:
        """Delete an account together with its rules, feeds and items."""
        with self._session() as db:
            row = db.get(MailAccount, account_id)
            if not row:
                return False
            db.delete(row)
            logger.info(f"Deleted account: {row.name}")
            return True

    # Rules

    def get_active_rules(self, account_id: str) -> List[Rule]:
        with self._session() as db:
            rows = (
                db.query(MailRule)
                .filter(MailRule.account_id == account_id, MailRule.is_active == True)  # noqa: E712
                .order_by(MailRule.created_at, MailRule.id)
                .all()
            )
            return [_rule(row) for row in rows]

    def list_rules(self, account_id: Optional[str] = None) -> List[Rule]:
        with self._session() as db:
            query = db.query(MailRule)
            if account_id:
                query = query.filter(MailRule.account_id == account_id)
            return [_rule(row) for row in query.order_by(MailRule.created_at, MailRule.id).all()]

    def create_rule(
        self,
        account_id: str,
        name: str,
        folder: str = "INBOX",
        to_address: Optional[str] = None,
        from_address: Optional[str] = None,
        subject_contains: Optional[str] = None,
        label: Optional[str] = None,
        is_active: bool = True,
        post_process_action: Optional[str] = None,
        move_to_folder: Optional[str] = None,
        inherit_account_defaults: bool = True,
    ) -> Rule:
        validate_rule_predicates(to_address, from_address, subject_contains, label)
        if not folder:
            raise ConfigError("A rule needs a source folder")
        if post_process_action is not None:
            post_process_action = ActionKind.parse(post_process_action).value

        with self._session() as db:
            if not db.get(MailAccount, account_id):
                raise ConfigError(f"Account {account_id} does not exist")
            row = MailRule(
                account_id=account_id,
                name=name,
                folder=folder,
                to_address=to_address,
                from_address=from_address,
                subject_contains=subject_contains,
                label=label,
                is_active=is_active,
                post_process_action=post_process_action,
                move_to_folder=move_to_folder,
                inherit_account_defaults=inherit_account_defaults,
            )
            db.add(row)
            db.flush()
            logger.info(f"Created rule: {name}")
            return _rule(row)

    # Feeds

    def get_active_feeds(self, rule_id: str) -> List[Feed]:
        with self._session() as db:
            rows = (
                db.query(FeedRow)
                .filter(FeedRow.rule_id == rule_id, FeedRow.is_active == True)  # noqa: E712
                .order_by(FeedRow.created_at, FeedRow.id)
                .all()
            )
            return [_feed(row) for row in rows]

    def list_feeds(self) -> List[Feed]:
        with self._session() as db:
            return [_feed(row) for row in db.query(FeedRow).order_by(FeedRow.created_at, FeedRow.id).all()]

    def create_feed(
        self,
        rule_id: str,
        title: str,
        feed_type: str = "rss",
        description: Optional[str] = None,
        is_active: bool = True,
        max_items: Optional[int] = 100,
        min_items: Optional[int] = 10,
        max_age_days: Optional[int] = 30,
    ) -> Feed:
        if feed_type not in FEED_TYPES:
            raise ConfigError(f"feed_type must be one of {', '.join(FEED_TYPES)}")
        validate_retention(max_items, min_items, max_age_days)

        with self._session() as db:
            if not db.get(MailRule, rule_id):
                raise ConfigError(f"Rule {rule_id} does not exist")
            row = FeedRow(
                rule_id=rule_id,
                title=title,
                description=description,
                feed_type=feed_type,
                is_active=is_active,
                max_items=max_items,
                min_items=min_items,
                max_age_days=max_age_days,
            )
            db.add(row)
            db.flush()
            logger.info(f"Created feed: {title}")
            return _feed(row)

    # Feed items

    def insert_item_if_absent(self, feed_id: str, draft: FeedItemDraft) -> bool:
        """Insert an item unless (feed, dedupe key) already exists. True when created."""
        db = (self.session_factory or SessionLocal)()
        try:
            exists = (
                db.query(FeedItem.id)
                .filter(FeedItem.feed_id == feed_id, FeedItem.dedupe_key == draft.dedupe_key)
                .first()
            )
            if exists:
                return False

            db.add(
                FeedItem(
                    feed_id=feed_id,
                    dedupe_key=draft.dedupe_key,
                    title=draft.title,
                    description=draft.description,
                    link=draft.link,
                    author=draft.author,
                    body=draft.body,
                    pub_date=draft.pub_date,
                )
            )
            db.commit()
            return True
        except IntegrityError:
            # Lost a race with another insert of the same key
            db.rollback()
            return False
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def list_item_stamps(self, feed_id: str) -> List[ItemStamp]:
        with self._session() as db:
            rows = db.query(FeedItem.id, FeedItem.pub_date).filter(FeedItem.feed_id == feed_id).all()
            return [ItemStamp(id=item_id, pub_date=pub_date) for item_id, pub_date in rows]

    def count_items(self, feed_id: str) -> int:
        with self._session() as db:
            return db.query(func.count(FeedItem.id)).filter(FeedItem.feed_id == feed_id).scalar() or 0

    def delete_items(self, item_ids: Iterable[str]) -> int:
        ids = list(item_ids)
        if not ids:
            return 0
        with self._session() as db:
            return db.query(FeedItem).filter(FeedItem.id.in_(ids)).delete(synchronize_session=False)

    # Watermarks

    def get_watermark(self, account_id: str) -> Optional[datetime]:
        with self._session() as db:
            row = db.get(MailAccount, account_id)
            return row.watermark if row else None

    def save_watermark(self, account_id: str, watermark: datetime) -> bool:
        """Advance an account's watermark. Never moves it backwards."""
        with self._session() as db:
            row = db.get(MailAccount, account_id)
            if not row:
                return False
            if row.watermark is not None and watermark <= row.watermark:
                return False
            row.watermark = watermark
            return True
