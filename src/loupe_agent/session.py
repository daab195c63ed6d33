from __future__ import annotations

from typing import Callable, Optional

from loguru import logger

from .errors import StorageError, StorageQuotaExceeded
from .models import AGENT_SESSION_ID_KEY
from .storage import KeyValueStore
from .utils import generate_id

SESSION_HEADER_NAME = "loupe-agent-sessionId"


class AgentSession:
    """Agent and caller session identity.

    ``agent_session_id`` is recovered from session storage when present,
    otherwise generated once and persisted on a best-effort basis.
    ``session_id`` belongs to the caller and has its own lifecycle.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore],
        *,
        can_write: Callable[[], bool] = lambda: True,
        on_quota_exceeded: Optional[Callable[[], None]] = None,
    ):
        self._store = store
        self._can_write = can_write
        self._on_quota = on_quota_exceeded
        self.session_id: Optional[str] = None
        self.agent_session_id = self._recover() or self._create()

    def _recover(self) -> Optional[str]:
        if self._store is None:
            return None
        try:
            return self._store.get(AGENT_SESSION_ID_KEY) or None
        except StorageError as exc:
            logger.warning(f"Unable to retrieve agent session id from session storage. {exc}")
        return None

    def _create(self) -> str:
        agent_session_id = generate_id()
        if self._store is not None and self._can_write():
            try:
                self._store.set(AGENT_SESSION_ID_KEY, agent_session_id)
            except StorageQuotaExceeded:
                if self._on_quota:
                    self._on_quota()
            except StorageError as exc:
                logger.warning(f"Unable to store agent session id in session storage. {exc}")
        return agent_session_id

    def header(self) -> dict:
        return {"headerName": SESSION_HEADER_NAME, "headerValue": self.agent_session_id}
