"""
HTTP transport for log batches.

Posts ``{"logMessages": [...], "session": {...}}`` to ``{origin}/loupe/log``
and classifies the response:

- 200..204: delivered
- 0 (no connectivity), 401 (auth rejected) and 5xx (collector failing):
  transient, retry later
- anything else: permanent rejection (e.g. malformed payload)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import httpx
from loguru import logger

from .errors import InvalidHeaderError, TransportUnavailable
from .host import PlatformDetector, detect_platform
from .models import Batch, PlatformInfo
from .utils import compact_json, strip_trailing_slash

LOG_PATH = "/loupe/log"
NO_CONNECTIVITY = 0
TRANSIENT_STATUSES = frozenset({NO_CONNECTIVITY, 401})


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    TRANSIENT = "transient"
    REJECTED = "rejected"


def classify_status(status_code: int) -> DeliveryStatus:
    if 200 <= status_code <= 204:
        return DeliveryStatus.SUCCESS
    if status_code in TRANSIENT_STATUSES or 500 <= status_code <= 599:
        return DeliveryStatus.TRANSIENT
    return DeliveryStatus.REJECTED


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one POST."""

    status_code: int
    reason: str = ""

    @property
    def status(self) -> DeliveryStatus:
        return classify_status(self.status_code)

    @property
    def succeeded(self) -> bool:
        return self.status is DeliveryStatus.SUCCESS


def validate_auth_header(header: Any) -> Dict[str, str]:
    """Accept a mapping or object with non-empty ``name`` and ``value``."""
    if not header:
        raise InvalidHeaderError("No header object provided")
    if isinstance(header, dict):
        name, value = header.get("name"), header.get("value")
    else:
        name, value = getattr(header, "name", None), getattr(header, "value", None)
    if not name or not value:
        raise InvalidHeaderError(
            "The header provided appears invalid as it doesn't have name & value"
        )
    return {"name": str(name), "value": str(value)}


def build_request_body(
    batch: Batch, client: PlatformInfo, agent_session_id: str
) -> Dict[str, Any]:
    return {
        "logMessages": [m.to_wire() for m in batch.messages],
        "session": {
            "client": client.model_dump(mode="json", by_alias=True),
            "currentAgentSessionId": agent_session_id,
        },
    }


class Transport(Protocol):
    """What the agent needs from a transport."""

    cors_origin: Optional[str]
    auth_header: Optional[Dict[str, str]]

    @property
    def available(self) -> bool: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def deliver(self, batch: Batch, agent_session_id: str) -> DeliveryOutcome: ...


class HttpLogTransport:
    """Delivers batches to the Loupe collector over httpx.

    Example:
        transport = HttpLogTransport("https://app.example.com")
        await transport.start()
        outcome = await transport.deliver(batch, agent_session_id)
        await transport.stop()
    """

    def __init__(
        self,
        origin: str,
        *,
        cors_origin: Optional[str] = None,
        auth_header: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        platform_detector: PlatformDetector = detect_platform,
        enabled: bool = True,
    ):
        self.origin = origin
        self.cors_origin = cors_origin
        self.auth_header = auth_header
        self._timeout = timeout
        self._platform_detector = platform_detector
        self._enabled = enabled
        self._client: Optional[httpx.AsyncClient] = None
        self._started = False

    async def start(self) -> None:
        if not self._enabled:
            logger.info("HttpLogTransport disabled; batches will stay queued")
            return
        if self._started:
            return
        self._client = httpx.AsyncClient(timeout=self._timeout)
        self._started = True
        logger.debug(f"HttpLogTransport started (url={self.url})")

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = None
        self._started = False

    @property
    def available(self) -> bool:
        return self._client is not None

    @property
    def url(self) -> str:
        return strip_trailing_slash(self.cors_origin or self.origin) + LOG_PATH

    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_header:
            headers[self.auth_header["name"]] = self.auth_header["value"]
        return headers

    async def deliver(self, batch: Batch, agent_session_id: str) -> DeliveryOutcome:
        """POST one batch. Network errors are reported as status 0.

        The body is serialized compactly, as messages were when their size
        was checked against the request cap.

        Raises:
            TransportUnavailable: the transport is not started
        """
        if self._client is None:
            raise TransportUnavailable("No HTTP client; log messages cannot be sent to Loupe")

        body = build_request_body(batch, self._platform_detector(), agent_session_id)
        try:
            response = await self._client.post(
                self.url, content=compact_json(body), headers=self.headers()
            )
        except httpx.HTTPError as exc:
            logger.warning(f"Failed to log to {self.url}: {type(exc).__name__}: {exc}")
            return DeliveryOutcome(NO_CONNECTIVITY, str(exc))

        outcome = DeliveryOutcome(response.status_code, response.reason_phrase or "")
        if not outcome.succeeded:
            logger.warning(
                f"Failed to log to {self.url}  Status: {outcome.status_code}: {outcome.reason}"
            )
        return outcome
