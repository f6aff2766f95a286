import os
import platform
from pathlib import Path
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DATA_DIR = (_PROJECT_ROOT / "data").resolve()
_DEFAULT_DB_PATH = (_DATA_DIR / "walletd.db").resolve()
_DEFAULT_WALLETD_BINARY = "zum-service" + (".exe" if platform.system() == "Windows" else "")
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"


def fix_path(value: Optional[str]) -> Optional[str]:
    """Expand ``~`` and resolve to an absolute path; empty values stay unset."""
    if value is None:
        return None
    text = str(value).strip().strip('"').strip("'")
    if not text:
        return None
    return str(Path(os.path.expanduser(text)).resolve())


class Settings(BaseSettings):
    # Service
    APP_NAME: str = "default"  # Namespaces the persisted scan cursor
    POLLING_INTERVAL_SECONDS: float = 10.0
    SAVE_INTERVAL_SECONDS: float = 10.0
    SCAN_INTERVAL_SECONDS: float = 5.0
    MAX_POLLING_FAILURES: int = 3  # Consecutive failed polls before "down"
    RPC_TIMEOUT_SECONDS: float = 2.0
    CLOSE_EVENT_DELAY_SECONDS: float = 2.0  # Lets trailing console output flush
    AUTO_RESTART: bool = True  # Restart the daemon when it closes
    STOP_ON_DOWN: bool = True  # Stop the daemon when it stops responding

    # Wallet daemon process
    WALLETD_PATH: str = str(_PROJECT_ROOT / _DEFAULT_WALLETD_BINARY)
    WALLETD_CONFIG: Optional[str] = None
    BIND_ADDRESS: str = "127.0.0.1"
    BIND_PORT: int = 17070
    RPC_PASSWORD: Optional[str] = None
    RPC_LEGACY_SECURITY: bool = False
    CONTAINER_FILE: Optional[str] = None
    CONTAINER_PASSWORD: Optional[str] = None
    WALLETD_LOG_FILE: Optional[str] = str(_DATA_DIR / "zum-service.log")
    WALLETD_LOG_LEVEL: int = 4
    SYNC_FROM_ZERO: bool = False
    DAEMON_RPC_ADDRESS: str = "127.0.0.1"
    DAEMON_RPC_PORT: int = 17935

    # RPC API defaults
    DEFAULT_MIXIN: int = 0
    DEFAULT_FEE: float = 0.1
    DEFAULT_BLOCK_COUNT: int = 1
    DECIMAL_DIVISOR: int = 100000000
    DEFAULT_FIRST_BLOCK_INDEX: int = 1
    DEFAULT_UNLOCK_TIME: int = 0
    DEFAULT_FUSION_THRESHOLD: int = 10000000000000

    # WebSocket gateway
    ENABLE_WEBSOCKET: bool = True
    GATEWAY_HOST: Optional[str] = None  # Falls back to BIND_ADDRESS
    GATEWAY_PORT: Optional[int] = None  # Falls back to BIND_PORT + 1
    GATEWAY_PASSWORD: Optional[str] = None  # Falls back to RPC_PASSWORD
    GATEWAY_AUTH_TIMEOUT_SECONDS: float = 10.0
    GATEWAY_OUTBOX_SIZE: int = 1000  # Queued messages per client before it is dropped

    # Database - canonical path under project-root data directory
    DATABASE_URL: str = f"{_SQLITE_ASYNC_PREFIX}{_DEFAULT_DB_PATH}"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None

    @field_validator(
        "WALLETD_PATH",
        "WALLETD_CONFIG",
        "CONTAINER_FILE",
        "WALLETD_LOG_FILE",
        "LOG_FILE",
        mode="before",
    )
    @classmethod
    def _normalize_path_field(cls, value: object) -> object:
        """Expand ``~`` and make daemon paths absolute."""
        if value is None:
            return value
        return fix_path(str(value))

    @field_validator("DAEMON_RPC_ADDRESS", mode="before")
    @classmethod
    def _normalize_daemon_address(cls, value: object) -> object:
        """The wildcard address is not connectable; talk to loopback instead."""
        if value is None:
            return value
        text = str(value).strip()
        return "127.0.0.1" if text == "0.0.0.0" else text

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        """Normalize DB URL so cwd changes never split databases."""
        if value is None:
            return value

        text = str(value).strip().strip('"').strip("'")
        if not text:
            return text

        # Convert relative SQLite paths to absolute project-root paths.
        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{prefix}:memory:"
            absolute = Path(path_part).resolve() if path_part.startswith("/") else (_PROJECT_ROOT / path_part).resolve()
            absolute.parent.mkdir(parents=True, exist_ok=True)
            return f"{prefix}{absolute}"

        return text

    @model_validator(mode="after")
    def _fill_gateway_defaults(self) -> "Settings":
        if not self.GATEWAY_HOST:
            self.GATEWAY_HOST = self.BIND_ADDRESS
        if not self.GATEWAY_PORT:
            self.GATEWAY_PORT = self.BIND_PORT + 1
        if not self.GATEWAY_PASSWORD:
            self.GATEWAY_PASSWORD = self.RPC_PASSWORD
        return self

    class Config:
        # Load project-root .env first (common workflow), then backend/.env
        # as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"


settings = Settings()
