import logging
import secrets
from enum import Enum
from typing import Callable, Optional, Tuple

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

from .clients.webdav_client import RemoteStore, normalize_base_url

logger = logging.getLogger(__name__)

SYNC_CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
SYNC_CODE_LENGTH = 8


class SyncMode(str, Enum):
    ACCOUNT = "ACCOUNT"  # credentialed WebDAV endpoint
    CODE = "CODE"        # public endpoint addressed by a shared sync code


class Settings(BaseSettings):
    # WebDAV
    WEBDAV_SYNC_MODE: SyncMode = SyncMode.ACCOUNT
    WEBDAV_URL: Optional[str] = None
    WEBDAV_USERNAME: Optional[str] = None
    WEBDAV_PASSWORD: Optional[str] = None
    WEBDAV_SYNC_CODE: Optional[str] = None
    WEBDAV_PUBLIC_URL: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: int = 30

    # Sync Logic
    SYNC_TIME_TOLERANCE_MS: int = 1000
    SYNC_PROGRESS_LEAD_MS: int = 60000
    HISTORY_RETENTION_DAYS: int = 60
    RESURRECT_EXPIRED_HISTORY: bool = True
    SYNC_WORKERS: int = 2
    SYNC_INTERVAL_SECONDS: int = 0  # 0 disables the periodic sync loop

    # Persistence
    STATE_PATH: str = "/data/state.json"
    PERSIST_ENABLED: bool = True

    # System
    LOG_LEVEL: str = "INFO"
    HTTP_SERVER_ENABLED: bool = False
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    @property
    def retention_ms(self) -> int:
        return self.HISTORY_RETENTION_DAYS * 24 * 60 * 60 * 1000


class ResolvedConfig(BaseModel):
    mode: SyncMode
    base_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    sync_code: Optional[str] = None

    @property
    def credentials(self) -> Optional[Tuple[str, str]]:
        if self.username and self.password:
            return self.username, self.password
        return None


def generate_sync_code() -> str:
    """8 characters drawn uniformly from [A-Z0-9]. Uniqueness is not checked."""
    return "".join(secrets.choice(SYNC_CODE_ALPHABET) for _ in range(SYNC_CODE_LENGTH))


def public_storage_url(public_url: Optional[str], sync_code: Optional[str]) -> Optional[str]:
    """e.g. https://gist.githubusercontent.com/<user>/<id>/raw/ + ABC123XY -> .../raw/ABC123XY/"""
    if not public_url:
        return None
    if not sync_code:
        return public_url
    return normalize_base_url(public_url) + sync_code + "/"


class SyncConfig:
    """
    Resolves the active sync mode and builds the remote store for it.
    Values are read once from the settings loader, or taken from `settings`
    when given. Call reload_config() after the inputs change (including
    switching modes).
    """

    def __init__(self, settings_loader: Callable[[], Settings] = Settings,
                 store_factory: Callable[..., RemoteStore] = RemoteStore,
                 settings: Optional[Settings] = None):
        self._load_settings = settings_loader
        self._store_factory = store_factory
        self.settings: Settings = settings if settings is not None else settings_loader()
        self.resolved = ResolvedConfig(mode=SyncMode.ACCOUNT)
        self.store: Optional[RemoteStore] = None
        self._apply(self.settings)

    def reload_config(self):
        self.settings = self._load_settings()
        self._apply(self.settings)

    def resolve(self) -> ResolvedConfig:
        return self.resolved

    @property
    def mode(self) -> SyncMode:
        return self.resolved.mode

    def is_configured(self) -> bool:
        r = self.resolved
        if self.store is None or not r.base_url:
            return False
        if r.mode == SyncMode.CODE:
            return bool(r.sync_code)
        return bool(r.username and r.password)

    def _apply(self, s: Settings):
        if s.WEBDAV_SYNC_MODE == SyncMode.CODE:
            resolved = ResolvedConfig(
                mode=SyncMode.CODE,
                sync_code=s.WEBDAV_SYNC_CODE,
                base_url=public_storage_url(s.WEBDAV_PUBLIC_URL, s.WEBDAV_SYNC_CODE),
            )
            usable = bool(resolved.sync_code and resolved.base_url)
        else:
            resolved = ResolvedConfig(
                mode=SyncMode.ACCOUNT,
                base_url=s.WEBDAV_URL,
                username=s.WEBDAV_USERNAME,
                password=s.WEBDAV_PASSWORD,
            )
            usable = bool(resolved.base_url and resolved.username and resolved.password)

        if self.store is not None:
            self.store.close()
            self.store = None
        self.resolved = resolved

        if not usable:
            logger.debug(f"WebDAV not configured for {resolved.mode.value} mode")
            return

        try:
            self.store = self._store_factory(
                resolved.base_url,
                auth=resolved.credentials,
                timeout=s.REQUEST_TIMEOUT_SECONDS,
            )
        except Exception as e:
            logger.error(f"Failed to initialize WebDAV client: {e}")
            self.store = None
            return

        if resolved.mode == SyncMode.CODE:
            logger.info(f"WebDAV sync code mode loaded, sync code: {resolved.sync_code}")
        else:
            logger.info("WebDAV account mode loaded")
