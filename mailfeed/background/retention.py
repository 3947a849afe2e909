"""Feed retention: age and count based eviction with a floor."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from mailfeed.background.clock import utcnow
from mailfeed.background.types import Feed, ItemStamp, RetentionPolicy

logger = logging.getLogger(__name__)


@dataclass
class CleanupResult:
    feeds_processed: int = 0
    items_removed: int = 0
    errors: int = 0


def select_evictions(items: Sequence[ItemStamp], policy: RetentionPolicy, now: datetime) -> List[str]:
    """Return ids of the items to drop from a feed.

    Items are ranked newest first. The newest ``min_items`` always stay,
    the rest must be younger than ``max_age_days``, and whatever survives is
    cut down to ``max_items`` from the oldest end.
    """
    ranked = sorted(items, key=lambda item: item.pub_date, reverse=True)

    floor = max(policy.min_items or 0, 0)
    if policy.max_items is not None:
        floor = min(floor, policy.max_items)

    survivors = ranked[:floor]
    remainder = ranked[floor:]

    if policy.max_age_days is not None:
        cutoff = now - timedelta(days=policy.max_age_days)
        remainder = [item for item in remainder if item.pub_date >= cutoff]

    survivors.extend(remainder)

    if policy.max_items is not None and len(survivors) > policy.max_items:
        survivors = survivors[:policy.max_items]

    keep = {item.id for item in survivors}
    return [item.id for item in ranked if item.id not in keep]


class RetentionManager:
    """Applies each feed's retention policy through the repository."""

    def __init__(self, repository, clock=None):
        self.repository = repository
        self._clock = clock or utcnow

    def enforce(self, feed: Feed, now: Optional[datetime] = None) -> int:
        """Evict items from one feed. Returns the number removed."""
        stamps = self.repository.list_item_stamps(feed.id)
        if not stamps:
            return 0

        doomed = select_evictions(stamps, feed.retention, now or self._clock())
        if not doomed:
            return 0

        removed = self.repository.delete_items(doomed)
        logger.debug(f"Retention removed {removed} items from feed '{feed.title}' ({feed.id})")
        return removed

    def enforce_all(self, dry_run: bool = False) -> CleanupResult:
        """Run retention over every feed, the way the periodic cleanup did."""
        result = CleanupResult()
        now = self._clock()

        for feed in self.repository.list_feeds():
            try:
                if dry_run:
                    removed = len(select_evictions(self.repository.list_item_stamps(feed.id), feed.retention, now))
                else:
                    removed = self.enforce(feed, now)
                result.feeds_processed += 1
                result.items_removed += removed
                if removed:
                    logger.info(f"Cleaned up {removed} items from feed '{feed.title}'")
            except Exception as e:
                logger.warning(f"Failed to clean up feed '{feed.title}': {e}")
                result.errors += 1

        logger.info(
            f"Cleanup complete: {result.feeds_processed} feeds processed, "
            f"{result.items_removed} items removed, {result.errors} errors"
        )
        return result
