from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class AgentSettings(BaseSettings):
    """Agent configuration, read from ``LOUPE_*`` environment variables or ``.env``."""

    ORIGIN: str = "http://localhost"
    CORS_ORIGIN: Optional[str] = None
    AUTH_HEADER_NAME: Optional[str] = None
    AUTH_HEADER_VALUE: Optional[str] = None

    # sqlite files; None keeps messages in memory / the session in-process
    STORAGE_PATH: Optional[str] = None
    SESSION_STORAGE_PATH: Optional[str] = None
    STORAGE_MAX_BYTES: Optional[int] = None

    MAX_REQUEST_SIZE: int = 204800
    BATCH_LIMIT: int = 10
    MEMORY_CAPACITY: int = 5000
    INTERVAL_DEBOUNCE_MS: int = 500
    REQUEST_TIMEOUT: float = 30.0

    # reported as the url of exceptions; defaults to the running script
    LOCATION: Optional[str] = None

    @property
    def auth_header(self) -> Optional[dict]:
        if self.AUTH_HEADER_NAME and self.AUTH_HEADER_VALUE:
            return {"name": self.AUTH_HEADER_NAME, "value": self.AUTH_HEADER_VALUE}
        return None

    class Config:
        env_prefix = "LOUPE_"
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> AgentSettings:
    return AgentSettings()
