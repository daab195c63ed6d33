"""
Loupe Agent

Client-resident telemetry agent: queues structured log messages durably and
delivers them in batches to a Loupe collector over HTTP.

Usage:
    from loupe_agent import LoupeAgent, AgentSettings

    async with LoupeAgent(AgentSettings(ORIGIN="https://app.example.com")) as agent:
        agent.information("Orders", "Order placed", "Order {0} placed", ["A-17"])
        agent.error("Orders", "Payment failed", "", exception=exc)
"""

from .engine import AgentHealth, LoupeAgent
from .errors import (
    InvalidHeaderError,
    LoupeAgentError,
    StorageError,
    StorageQuotaExceeded,
    StorageUnavailable,
    TransportUnavailable,
)
from .models import ExceptionInfo, LogMessage, LogMessageSeverity, MethodSourceInfo
from .settings import AgentSettings, get_settings
from .storage import KeyValueStore, MemoryStore, SqliteStore
from .transport import DeliveryOutcome, HttpLogTransport

__version__ = "0.1.0"
__all__ = [
    "LoupeAgent",
    "AgentHealth",
    "AgentSettings",
    "get_settings",
    "LogMessage",
    "LogMessageSeverity",
    "ExceptionInfo",
    "MethodSourceInfo",
    "KeyValueStore",
    "MemoryStore",
    "SqliteStore",
    "HttpLogTransport",
    "DeliveryOutcome",
    "LoupeAgentError",
    "StorageError",
    "StorageQuotaExceeded",
    "StorageUnavailable",
    "TransportUnavailable",
    "InvalidHeaderError",
]
