"""
Pydantic data models for the Loupe agent.

Wire field names are camelCase to stay compatible with the Loupe collector;
Python code uses the snake_case attribute names.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MESSAGE_KEY_PREFIX = "Loupe-message-"
SEQUENCE_NUMBER_KEY = "LoupeSequenceNumber"
AGENT_SESSION_ID_KEY = "LoupeAgentSessionId"


class LogMessageSeverity(IntEnum):
    """Loupe severities; lower values are more severe."""

    critical = 1
    error = 2
    warning = 4
    information = 8
    verbose = 16

    @classmethod
    def parse(cls, value: "LogMessageSeverity | int | str") -> "LogMessageSeverity":
        """Accept a member, its integer value or its name."""
        if isinstance(value, str) and not value.isdigit():
            return cls[value.strip().lower()]
        return cls(int(value))


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class MethodSourceInfo(_WireModel):
    """Where in the caller's code a message was written."""

    file: Optional[str] = None
    method: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None


class ExceptionInfo(_WireModel):
    """Canonical exception record carried on a log message."""

    cause: str = ""
    column: Optional[int] = None
    line: Optional[int] = None
    message: str = ""
    stack_trace: List[Any] = Field(default_factory=list, alias="stackTrace")
    url: str = ""


class ScreenSize(_WireModel):
    height: Optional[int] = None
    width: Optional[int] = None


class PlatformInfo(_WireModel):
    """Client description sent with every batch."""

    os: Optional[str] = None
    browser: Optional[str] = None
    device: Optional[str] = None
    screen_size: ScreenSize = Field(default_factory=ScreenSize, alias="screenSize")


class LogMessage(_WireModel):
    """Immutable, timestamped and sequenced log record."""

    severity: LogMessageSeverity
    category: str
    caption: str
    description: str
    parameters: Optional[List[Any]] = None
    details: Optional[str] = None
    exception: Optional[ExceptionInfo] = None
    method_source_info: Optional[MethodSourceInfo] = Field(default=None, alias="methodSourceInfo")
    time_stamp: str = Field(alias="timeStamp")
    sequence: int
    agent_session_id: Optional[str] = Field(default=None, alias="agentSessionId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")

    @field_validator("category", "caption", "description", mode="before")
    @classmethod
    def _text_or_empty(cls, v):
        return "" if v is None else str(v)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    def with_details(self, details: Optional[str]) -> "LogMessage":
        return self.model_copy(update={"details": details})

    @property
    def sort_time(self) -> datetime:
        """Timestamp as an aware datetime; naive values are taken as local time.

        Raises:
            ValueError: ``time_stamp`` is not an ISO 8601 timestamp
        """
        parsed = datetime.fromisoformat(self.time_stamp)
        return parsed if parsed.tzinfo is not None else parsed.astimezone()


def serialized_size(text: str) -> int:
    """Size in bytes of a serialized message."""
    return len(text.encode("utf-8"))


@dataclass
class QueueEntry:
    """A queued message plus its storage key (None when memory-resident)."""

    message: LogMessage
    size: int
    sort_time: datetime
    key: Optional[str] = None

    @classmethod
    def from_json(cls, raw: str, key: Optional[str] = None) -> "QueueEntry":
        """Parse a serialized message.

        Raises:
            ValidationError: not a valid message
            ValueError: its timestamp cannot be parsed
        """
        message = LogMessage.model_validate_json(raw)
        return cls(message=message, size=serialized_size(raw), sort_time=message.sort_time, key=key)

    @property
    def durable(self) -> bool:
        return self.key is not None


@dataclass
class Batch:
    """Messages selected for one delivery attempt."""

    messages: List[LogMessage] = field(default_factory=list)
    keys: List[str] = field(default_factory=list)
    has_more: bool = False
    memory_entries: List[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.messages)

    @property
    def total_size(self) -> int:
        return sum(serialized_size(m.to_json()) for m in self.messages)
