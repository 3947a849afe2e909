"""Tests for the feed cleanup script."""

import importlib.util
from datetime import timedelta
from pathlib import Path

SCRIPT = Path(__file__).parent.parent / "scripts" / "cleanup_feeds.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("cleanup_feeds", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_cleanup_script_applies_retention(tmp_path, capsys):
    from mailfeed.background.clock import utcnow
    from mailfeed.background.types import FeedItemDraft
    from mailfeed.database.connection import build_engine, init_database

    db_url = f"sqlite:///{tmp_path / 'feeds.db'}"
    init_database(bind=build_engine(db_url))
    script = _load_script()
    repository = script.build_repository(db_url)

    account = repository.create_account(name="Lists", host="imap.example.com", username="u", password="p")
    rule = repository.create_rule(account.id, name="All list mail", to_address="list@example.com")
    feed = repository.create_feed(rule.id, title="List", min_items=0, max_age_days=7)
    repository.insert_item_if_absent(
        feed.id,
        FeedItemDraft(
            dedupe_key="<old@example.com>",
            title="Old",
            description="",
            link=None,
            author=None,
            pub_date=utcnow() - timedelta(days=30),
            body="",
        ),
    )

    assert script.main(["--dry-run", "--db-url", db_url]) == 0
    assert repository.count_items(feed.id) == 1
    assert "Items to remove: 1" in capsys.readouterr().out

    assert script.main(["--db-url", db_url]) == 0
    assert repository.count_items(feed.id) == 0
