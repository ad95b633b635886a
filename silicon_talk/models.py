"""Conversation data model: messages, model status, ephemeral turn status, context."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Union


def utc_now() -> datetime:
    """Return the current instant in UTC, truncated to milliseconds."""
    now = datetime.now(UTC)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


class Sender(str, Enum):
    USER = "user"
    AI = "ai"
    SYSTEM = "system"


class StatusKind(str, Enum):
    CHECKING = "checking"
    READY = "ready"
    DOWNLOADING = "downloading"
    DOWNLOADABLE = "downloadable"
    NOT_AVAILABLE = "not-available"
    ERROR = "error"
    UNKNOWN = "unknown"


# Statuses that end a polling cycle for the current session.
TERMINAL_STATUSES = frozenset({StatusKind.READY, StatusKind.NOT_AVAILABLE, StatusKind.ERROR})

# Statuses under which the orchestrator accepts turns at all.
USABLE_STATUSES = frozenset({StatusKind.READY, StatusKind.DOWNLOADING, StatusKind.DOWNLOADABLE})


class TurnStage(str, Enum):
    RECEIVED = "received"
    SENT = "sent"
    THINKING = "thinking"


@dataclass(frozen=True)
class ModelStatus:
    """Normalized inference-engine status descriptor ``{status, message, progress?}``."""

    status: StatusKind
    message: str = ""
    progress: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress_percent(self) -> int | None:
        if self.progress is None:
            return None
        # Half-up, so 0.125 reads as 13%.
        return math.floor(self.progress * 100 + 0.5)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value, "message": self.message}
        if self.progress is not None:
            data["progress"] = self.progress
        return data


@dataclass(frozen=True)
class EphemeralStatus:
    """Transient turn-progress indicator. Never stored in history."""

    active: bool = False
    stage: TurnStage | None = None

    @classmethod
    def inactive(cls) -> EphemeralStatus:
        return cls()

    @classmethod
    def at(cls, stage: TurnStage) -> EphemeralStatus:
        return cls(active=True, stage=stage)


@dataclass
class PlainMessage:
    """A message carrying plain text (user input, system notes, fallbacks, streaming drafts)."""

    sender: Sender
    text: str
    timestamp: datetime = field(default_factory=utc_now)
    streaming: bool = False
    ephemeral: bool = False

    @property
    def display_text(self) -> str:
        return self.text

    def append_chunk(self, chunk: str) -> None:
        """Grow the text in place. Only legal while the message is streaming."""
        if not self.streaming:
            raise ValueError("cannot append to a settled message")
        self.text += chunk


@dataclass
class StructuredMessage:
    """An AI message with a human-readable projection of a raw response envelope."""

    sender: Sender
    display_text: str
    full_response: str
    is_json: bool
    topics: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utc_now)
    streaming: bool = False
    ephemeral: bool = False

    @property
    def text(self) -> str:
        return self.display_text

    @classmethod
    def from_status(cls, status: ModelStatus, display_text: str) -> StructuredMessage:
        """AI message that reports a non-ready model status instead of an answer."""
        return cls(
            sender=Sender.AI,
            display_text=display_text,
            full_response=json.dumps(status.to_dict(), ensure_ascii=False, indent=2),
            is_json=True,
        )


Message = Union[PlainMessage, StructuredMessage]


@dataclass
class ConversationContext:
    """Derived conversation state: the user's name and the topics seen so far."""

    user_name: str | None = None
    topics: set[str] = field(default_factory=set)

    def remember_name(self, name: str | None) -> bool:
        """Set the user's name once. Returns True when it changed."""
        if name is None or self.user_name is not None:
            return False
        self.user_name = name
        return True

    def sorted_topics(self) -> list[str]:
        return sorted(self.topics)
