"""
Unhandled-exception hook chaining.

Handlers are an ordered list composed explicitly by ``ErrorHookChain``
instead of each component wrapping ``sys.excepthook`` in turn.
"""

from __future__ import annotations

import sys
from types import TracebackType
from typing import Callable, List, Optional, Type

from loguru import logger

ExceptHook = Callable[[Type[BaseException], BaseException, Optional[TracebackType]], object]


class ErrorHookChain:
    """Ordered unhandled-exception handlers installed on ``sys.excepthook``.

    On dispatch, a custom hook that was installed before us runs first, then
    the interpreter's default handling when ``propagate_error`` is True
    (True means "do not suppress the default"), then every registered handler
    in registration order. A failing handler does not affect the others.

    Example:
        chain = ErrorHookChain()
        chain.register(lambda t, e, tb: print("unhandled", e))
        chain.install()
    """

    def __init__(self, *, propagate_error: bool = False) -> None:
        self.propagate_error = propagate_error
        self._handlers: List[ExceptHook] = []
        self._previous: Optional[ExceptHook] = None
        self._hook: Optional[ExceptHook] = None

    def register(self, handler: ExceptHook) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)
            logger.debug(f"Error handler added (total: {len(self._handlers)})")

    def unregister(self, handler: ExceptHook) -> None:
        """No-op if the handler is not registered."""
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    @property
    def installed(self) -> bool:
        return self._hook is not None and sys.excepthook == self._hook

    def install(self) -> None:
        if self.installed:
            return
        self._previous = sys.excepthook
        self._hook = self.dispatch
        sys.excepthook = self._hook

    def uninstall(self) -> None:
        """Restore the hook that was active before ``install()``."""
        if self.installed and self._previous is not None:
            sys.excepthook = self._previous
        self._hook = None
        self._previous = None

    def dispatch(
        self,
        exc_type: Type[BaseException],
        exc: BaseException,
        tb: Optional[TracebackType],
    ) -> bool:
        previous = self._previous
        if previous is not None and previous is not sys.__excepthook__:
            try:
                previous(exc_type, exc, tb)
            except Exception as hook_exc:
                logger.debug(f"Previous excepthook failed: {type(hook_exc).__name__}: {hook_exc}")

        if self.propagate_error:
            sys.__excepthook__(exc_type, exc, tb)

        for handler in list(self._handlers):
            try:
                handler(exc_type, exc, tb)
            except Exception as handler_exc:
                logger.debug(
                    f"Error handler failed (ignored): {type(handler_exc).__name__}: {handler_exc}"
                )

        return self.propagate_error
