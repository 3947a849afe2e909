"""Rule matching and post-process action resolution."""

import logging
from typing import Optional

from mailfeed.background.errors import ConfigError
from mailfeed.background.types import Account, Rule
from mailfeed.mail.types import ActionKind, MailMessage, PostProcessAction

logger = logging.getLogger(__name__)


def _present(value: Optional[str]) -> bool:
    return bool(value and value.strip())


def validate_rule_predicates(
    to_address: Optional[str] = None,
    from_address: Optional[str] = None,
    subject_contains: Optional[str] = None,
    label: Optional[str] = None,
) -> None:
    """A rule with no predicate would match every message in its folder."""
    if not any(_present(v) for v in (to_address, from_address, subject_contains, label)):
        raise ConfigError("A rule needs at least one of to_address, from_address, subject_contains or label")


def matches(message: MailMessage, rule: Rule) -> bool:
    """True when every non-empty predicate on the rule holds for the message."""
    if _present(rule.from_address) and rule.from_address.strip().lower() not in message.sender.lower():
        logger.debug(f"Rule {rule.name}: from '{message.sender}' lacks '{rule.from_address}'")
        return False

    if _present(rule.to_address) and rule.to_address.strip().lower() not in message.recipient.lower():
        logger.debug(f"Rule {rule.name}: to '{message.recipient}' lacks '{rule.to_address}'")
        return False

    if _present(rule.subject_contains) and rule.subject_contains.strip().lower() not in message.subject.lower():
        logger.debug(f"Rule {rule.name}: subject '{message.subject}' lacks '{rule.subject_contains}'")
        return False

    if _present(rule.label):
        wanted = rule.label.strip().lower()
        if not any(label.lower() == wanted for label in message.labels):
            logger.debug(f"Rule {rule.name}: labels {message.labels} lack '{rule.label}'")
            return False

    return True


def resolve_action(rule: Rule, account: Account) -> PostProcessAction:
    """Pick the action for a matched message.

    The inherit flag wins over any rule-level value left behind from before
    the flag was set.
    """
    if rule.inherit_account_defaults:
        kind = ActionKind.parse(account.default_post_process_action)
        folder = account.default_move_to_folder
    else:
        kind = ActionKind.parse(rule.post_process_action or account.default_post_process_action)
        folder = rule.move_to_folder or account.default_move_to_folder

    if kind is ActionKind.MOVE_TO_FOLDER:
        return PostProcessAction(kind, folder)
    return PostProcessAction(kind)
