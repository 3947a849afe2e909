"""Value types shared between the mail capability and the background core."""

import enum
import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional, Protocol, Tuple

if TYPE_CHECKING:
    from mailfeed.background.types import Account


class ActionKind(str, enum.Enum):
    """Post-process actions applied to a message after it reached its feeds."""

    DO_NOTHING = "do_nothing"
    MARK_READ = "mark_read"
    DELETE = "delete"
    MOVE_TO_FOLDER = "move_to_folder"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ActionKind":
        """Lenient parse: unknown or empty values fall back to mark_read."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            return cls.MARK_READ


@dataclass(frozen=True)
class PostProcessAction:
    kind: ActionKind = ActionKind.MARK_READ
    target_folder: Optional[str] = None

    def __str__(self):
        if self.kind is ActionKind.MOVE_TO_FOLDER:
            return f"{self.kind.value}:{self.target_folder or '?'}"
        return self.kind.value


@dataclass(frozen=True)
class MailMessage:
    """A message listed from one folder of one account."""

    uid: str
    folder: str
    message_id: str
    sender: str
    recipient: str
    subject: str
    date: datetime  # naive UTC
    body_plain: str = ""
    body_html: str = ""
    labels: Tuple[str, ...] = field(default_factory=tuple)
    # Server arrival time (IMAP INTERNALDATE), naive UTC; the polling cursor
    received: Optional[datetime] = None

    @property
    def identity(self) -> str:
        """Stable dedupe key: the Message-ID header, else a digest of the envelope."""
        if self.message_id:
            return self.message_id.strip()
        digest = hashlib.sha1(
            f"{self.sender}\x00{self.subject}\x00{self.date.isoformat()}".encode("utf-8")
        ).hexdigest()
        return f"sha1:{digest}"


class MailClient(Protocol):
    """What the worker needs from a mail protocol implementation."""

    async def connect(self, account: "Account") -> Any:
        ...

    def list_messages(
        self, connection: Any, folder: str, since: Optional[datetime], max_count: int
    ) -> AsyncIterator[MailMessage]:
        """Yield up to ``max_count`` messages received at or after ``since``, oldest arrival first."""
        ...

    async def apply_action(self, connection: Any, message: MailMessage, action: PostProcessAction) -> None:
        ...

    async def disconnect(self, connection: Any) -> None:
        ...
