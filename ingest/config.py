from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache

SERVICE_NAME = "event-ingest"
REQUEST_TIMEOUT_SECONDS = 30.0
SHUTDOWN_GRACE_SECONDS = 10.0
# GET /events always returns at most this many events.
EVENT_PAGE_SIZE = 50


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")

    HTTP_ADDR: str = ":8080"
    LOG_JSON: bool = True
    LOG_LEVEL: str = "INFO"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def parse_http_addr(addr: str) -> tuple[str, int]:
    """
    Split a listen address into host and port.

    Accepts ``host:port``, ``:port`` and ``[v6addr]:port``. An empty host
    means every interface and is returned as ``""``.

    Raises:
        ValueError: If the address has no valid port.
    """
    host, sep, port = addr.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    port_number = int(port)
    if port_number > 65535:
        raise ValueError(f"port out of range in {addr!r}")
    return host, port_number
