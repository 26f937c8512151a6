"""
Value types shared by every stage of the campaign.

All of them are immutable: requests are built fresh per unit of work and
consumed once by the dispatcher, thread records are never mutated once
appended to the graph.
"""

import os
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class MessageKind(Enum):
    NEW = "new"
    REPLY = "reply"
    FORWARD = "forward"
    OVERFLOW = "overflow"  # top-up pass, generated like NEW with big attachments


class AttachmentTier(Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


@dataclass(frozen=True)
class Identity:
    index: int
    address: str
    display_name: str
    credential: str = field(repr=False)


@dataclass(frozen=True)
class AttachmentRef:
    """A file-system resident attachment. Bytes are read lazily at send time."""
    path: str
    size: int
    tier: AttachmentTier

    @property
    def filename(self) -> str:
        return os.path.basename(self.path)


@dataclass(frozen=True)
class SendRequest:
    kind: MessageKind
    sender: Identity
    to: Tuple[Identity, ...]
    subject: str
    body: str
    cc: Tuple[Identity, ...] = ()
    attachments: Tuple[AttachmentRef, ...] = ()
    inline_image: Optional[AttachmentRef] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    origin_id: Optional[str] = None  # ThreadRecord this reply/forward came from

    @property
    def recipients(self) -> List[str]:
        return [i.address for i in self.to] + [i.address for i in self.cc]


@dataclass(frozen=True)
class SendOutcome:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, message_id: str) -> "SendOutcome":
        return cls(success=True, message_id=message_id)

    @classmethod
    def failed(cls, error: str) -> "SendOutcome":
        return cls(success=False, error=error or "unknown error")


@dataclass(frozen=True)
class ThreadRecord:
    message_id: str
    subject: str
    sender: str
    sender_name: str
    recipient: str
    recipient_name: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreadRecord":
        return cls(
            message_id=data["message_id"],
            subject=data.get("subject", ""),
            sender=data["sender"],
            sender_name=data.get("sender_name", ""),
            recipient=data["recipient"],
            recipient_name=data.get("recipient_name", ""),
        )
