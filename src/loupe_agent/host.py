"""
Host adapters: platform description, stack frames and current location.

These are stateless collaborators of the agent and are injected so tests
can replace them.
"""

from __future__ import annotations

import os
import platform
import shutil
import sys
import traceback
from typing import Callable, Iterator, List, Optional

from .models import PlatformInfo, ScreenSize

PlatformDetector = Callable[[], PlatformInfo]
StackExtractor = Callable[[Optional[BaseException]], Iterator[str]]

_AGENT_ROOT = os.path.dirname(os.path.abspath(__file__))


def detect_platform() -> PlatformInfo:
    """Describe the host: OS, runtime, machine and terminal size."""
    size = shutil.get_terminal_size(fallback=(0, 0))
    return PlatformInfo(
        os=f"{platform.system()} {platform.release()}".strip() or None,
        browser=f"{platform.python_implementation()} {platform.python_version()}",
        device=platform.machine() or None,
        screen_size=ScreenSize(height=size.lines, width=size.columns),
    )


def _is_agent_frame(frame: traceback.FrameSummary) -> bool:
    return os.path.abspath(frame.filename).startswith(_AGENT_ROOT + os.sep)


def _strip_agent_frames(frames: List[traceback.FrameSummary]) -> List[traceback.FrameSummary]:
    end = len(frames)
    while end and _is_agent_frame(frames[end - 1]):
        end -= 1
    return frames[:end]


def extract_stack(error: Optional[BaseException] = None) -> Iterator[str]:
    """
    Yield stack frames oldest caller first, as ``function (file:line)``.

    Frames come from the exception's traceback when it has one, otherwise
    from the current call stack. Agent frames at the innermost end are
    stripped so the stack ends in caller code.
    """
    if error is not None and error.__traceback__ is not None:
        frames = list(traceback.extract_tb(error.__traceback__))
    else:
        frames = list(traceback.extract_stack())

    for frame in _strip_agent_frames(frames):
        yield f"{frame.name} ({frame.filename}:{frame.lineno})"


def innermost_line(error: BaseException) -> Optional[int]:
    tb = error.__traceback__
    if tb is None:
        return None
    while tb.tb_next is not None:
        tb = tb.tb_next
    return tb.tb_lineno


def current_location(configured: Optional[str] = None) -> str:
    """Location reported as the ``url`` of exceptions."""
    if configured:
        return configured
    return sys.argv[0] if sys.argv and sys.argv[0] else ""
