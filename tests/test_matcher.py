"""Tests for rule matching and action resolution."""

import pytest


def _rule(**kwargs):
    from mailfeed.background.types import Rule

    return Rule(id="r1", account_id="a1", name="rule", **kwargs)


def _account(**kwargs):
    from mailfeed.background.types import Account

    defaults = dict(id="a1", name="Lists", host="imap.example.com", port=993, username="u", password="p")
    defaults.update(kwargs)
    return Account(**defaults)


def test_to_address_scenario(make_message):
    """A rule on to_address matches any sender or subject sent to that address."""
    from mailfeed.background.matcher import matches

    rule = _rule(to_address="a@x.com")

    assert matches(make_message(1, recipient="a@x.com", sender="anyone@y.org", subject="anything"), rule)
    assert not matches(make_message(2, recipient="c@x.com"), rule)


def test_matching_is_case_insensitive(make_message):
    from mailfeed.background.matcher import matches

    rule = _rule(from_address="NEWS@Lists.Example.com", subject_contains="DIGEST")

    assert matches(make_message(1, sender="News <news@lists.example.com>", subject="Weekly digest"), rule)


def test_every_predicate_must_hold(make_message):
    from mailfeed.background.matcher import matches

    rule = _rule(to_address="python-list@example.com", subject_contains="release")

    assert not matches(make_message(1, subject="Weekly digest"), rule)
    assert matches(make_message(2, subject="New release out"), rule)


def test_label_is_compared_for_equality(make_message):
    from mailfeed.background.matcher import matches

    rule = _rule(label="Newsletters")

    assert matches(make_message(1, labels=("$Important", "newsletters")), rule)
    assert not matches(make_message(2, labels=("newsletters-old",)), rule)
    assert not matches(make_message(3), rule)


@pytest.mark.parametrize("values", [(None, None, None, None), ("", "  ", None, "")])
def test_rule_needs_a_predicate(values):
    from mailfeed.background.errors import ConfigError
    from mailfeed.background.matcher import validate_rule_predicates

    with pytest.raises(ConfigError):
        validate_rule_predicates(*values)


def test_inherit_flag_uses_account_defaults():
    """The inherit flag wins over a stale rule-level action."""
    from mailfeed.background.matcher import resolve_action
    from mailfeed.mail.types import ActionKind

    account = _account(default_post_process_action="delete")
    rule = _rule(to_address="x", post_process_action="move_to_folder", move_to_folder="Old", inherit_account_defaults=True)

    action = resolve_action(rule, account)

    assert action.kind is ActionKind.DELETE
    assert action.target_folder is None


def test_rule_override_applies_when_not_inheriting():
    from mailfeed.background.matcher import resolve_action
    from mailfeed.mail.types import ActionKind

    account = _account(default_post_process_action="mark_read")
    rule = _rule(
        to_address="x", post_process_action="move_to_folder", move_to_folder="Lists", inherit_account_defaults=False
    )

    action = resolve_action(rule, account)

    assert action.kind is ActionKind.MOVE_TO_FOLDER
    assert action.target_folder == "Lists"
    assert str(action) == "move_to_folder:Lists"


def test_missing_rule_fields_fall_back_to_account():
    from mailfeed.background.matcher import resolve_action
    from mailfeed.mail.types import ActionKind

    account = _account(default_post_process_action="move_to_folder", default_move_to_folder="Archive")
    rule = _rule(to_address="x", inherit_account_defaults=False)

    action = resolve_action(rule, account)

    assert action.kind is ActionKind.MOVE_TO_FOLDER
    assert action.target_folder == "Archive"


def test_unknown_action_parses_as_mark_read():
    from mailfeed.mail.types import ActionKind

    assert ActionKind.parse("archive-it") is ActionKind.MARK_READ
    assert ActionKind.parse(None) is ActionKind.MARK_READ
    assert ActionKind.parse("delete") is ActionKind.DELETE
