"""
Message construction.

Normalizes caller arguments into an immutable ``LogMessage``: optional
arguments become explicit None, structured details are serialized, method
source info and exceptions are converted to their canonical shapes, and
each message gets a timestamp and the next sequence number.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from .host import StackExtractor, extract_stack, innermost_line
from .models import ExceptionInfo, LogMessage, LogMessageSeverity, MethodSourceInfo
from .queue import PersistentQueue
from .sequence import SequenceCounter
from .session import AgentSession
from .utils import compact_json, create_timestamp


@dataclass(frozen=True)
class StringException:
    """Exception passed as plain text."""

    text: str

    def to_record(self, url: str) -> ExceptionInfo:
        return ExceptionInfo(
            cause="", column=None, line=None, message=self.text, stack_trace=[], url=url
        )


@dataclass(frozen=True)
class CanonicalException:
    """Exception already in the agent's record shape; passed through unchanged."""

    record: ExceptionInfo

    def to_record(self, url: str) -> ExceptionInfo:
        return self.record


@dataclass(frozen=True)
class RawException:
    """Any other exception-like value, reduced to message, position and stack."""

    message: str
    line: Optional[int] = None
    column: Optional[int] = None
    stack_trace: List[Any] = field(default_factory=list)

    def to_record(self, url: str) -> ExceptionInfo:
        return ExceptionInfo(
            cause="",
            column=self.column,
            line=self.line,
            message=self.message,
            stack_trace=self.stack_trace,
            url=url,
        )


ExceptionVariant = Union[RawException, StringException, CanonicalException]


def classify_exception(
    value: Any, stack_extractor: StackExtractor = extract_stack
) -> Optional[ExceptionVariant]:
    """Discriminate a caller-supplied exception once, at the boundary."""
    if value is None:
        return None
    if isinstance(value, ExceptionInfo):
        return CanonicalException(value)
    if isinstance(value, str):
        return StringException(value)
    if isinstance(value, BaseException):
        return RawException(
            message=str(value),
            line=innermost_line(value),
            stack_trace=list(stack_extractor(value)),
        )
    if isinstance(value, Mapping):
        if "url" in value:
            try:
                return CanonicalException(ExceptionInfo.model_validate(dict(value)))
            except ValidationError:
                pass
        return RawException(
            message=str(value.get("message") or ""),
            line=value.get("lineNumber") or None,
            column=value.get("columnNumber") or None,
            stack_trace=list(value.get("stackTrace") or []),
        )
    return StringException(str(value))


def normalize_parameters(parameters: Optional[Sequence[Any]]) -> Optional[List[Any]]:
    """JSON-safe copy of the parameters; values JSON cannot hold become their str()."""
    if parameters is None:
        return None
    return json.loads(compact_json(list(parameters)))


def normalize_details(details: Any) -> Optional[str]:
    if details is None or isinstance(details, str):
        return details
    return compact_json(details)


def normalize_method_source_info(info: Any) -> Optional[MethodSourceInfo]:
    if info is None or isinstance(info, MethodSourceInfo):
        return info
    if isinstance(info, Mapping):
        data = info
    else:
        data = {k: getattr(info, k, None) for k in ("file", "method", "line", "column")}
    return MethodSourceInfo(
        file=data.get("file") or None,
        method=data.get("method") or None,
        line=data.get("line") or None,
        column=data.get("column") or None,
    )


class MessageBuilder:
    """Builds sequenced messages and hands them to the persistent queue."""

    def __init__(
        self,
        sequence: SequenceCounter,
        session: AgentSession,
        queue: PersistentQueue,
        *,
        location: str = "",
        stack_extractor: StackExtractor = extract_stack,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._sequence = sequence
        self._session = session
        self._queue = queue
        self._location = location
        self._stack_extractor = stack_extractor
        self._clock = clock

    def build(
        self,
        severity: LogMessageSeverity,
        category: str,
        caption: str,
        description: str,
        parameters: Optional[Sequence[Any]] = None,
        exception: Any = None,
        details: Any = None,
        method_source_info: Any = None,
    ) -> LogMessage:
        variant = classify_exception(exception, self._stack_extractor)

        return LogMessage(
            severity=LogMessageSeverity.parse(severity),
            category=category,
            caption=caption,
            description=description,
            parameters=normalize_parameters(parameters),
            details=normalize_details(details),
            exception=variant.to_record(self._location) if variant else None,
            method_source_info=normalize_method_source_info(method_source_info),
            time_stamp=create_timestamp(self._clock()),
            sequence=self._sequence.next(),
            agent_session_id=self._session.agent_session_id,
            session_id=self._session.session_id,
        )

    def write(self, *args: Any, **kwargs: Any) -> LogMessage:
        """Build a message with ``build()`` arguments and queue it."""
        message = self.build(*args, **kwargs)
        self._queue.store(message)
        return message
