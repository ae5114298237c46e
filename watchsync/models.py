from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel

# Separator between the site, vod and episode segments of a history key
KEY_SEPARATOR = "@@@"


class HistoryRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    key: str = ""
    vod_name: str = ""
    vod_pic: Optional[str] = None
    vod_remarks: Optional[str] = None
    vod_flag: Optional[str] = None
    episode_url: Optional[str] = None
    cid: int = 0

    # Playback offsets in ms, negative when unknown
    position: int = -1
    duration: int = -1
    speed: float = 1.0

    create_time: int = 0  # epoch ms, last touched

    @field_validator("key", "vod_name", "cid", "position", "duration", "speed", "create_time", mode="before")
    @classmethod
    def _null_as_default(cls, value: Any, info: ValidationInfo) -> Any:
        # Peers may send explicit nulls; those records still reach the merge
        if value is None:
            return cls.model_fields[info.field_name].default
        return value

    @staticmethod
    def build_key(site_key: str, vod_id: str, episode_id: str) -> str:
        return KEY_SEPARATOR.join((site_key, vod_id, episode_id))

    @property
    def key_parts(self) -> List[str]:
        return self.key.split(KEY_SEPARATOR)

    @property
    def site_key(self) -> str:
        return self.key_parts[0]

    @property
    def has_valid_position(self) -> bool:
        return self.position >= 0

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Backup(BaseModel):
    """Full-state snapshot. Only ``config`` is inspected; the rest travels as-is."""
    model_config = ConfigDict(extra="allow")

    config: List[Dict[str, Any]] = Field(default_factory=list)
    history: List[HistoryRecord] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)


class LocalState(BaseModel):
    history: Dict[str, HistoryRecord] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)
    config: List[Dict[str, Any]] = Field(default_factory=list)


class ConnectionFailure(str, Enum):
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    TLS = "tls"
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    NOT_CONFIGURED = "not_configured"
    OTHER = "other"


FAILURE_MESSAGES: Dict[ConnectionFailure, str] = {
    ConnectionFailure.AUTHENTICATION: (
        "Authentication failed: check the username and password. "
        "Some providers require an app password instead of the login password."
    ),
    ConnectionFailure.PERMISSION: "Access denied: the account may not have WebDAV permission.",
    ConnectionFailure.NOT_FOUND: "URL not found: check the WebDAV server address.",
    ConnectionFailure.TLS: "TLS certificate error: check that the server certificate is valid.",
    ConnectionFailure.TIMEOUT: "Connection timed out: check the network or the server address.",
    ConnectionFailure.UNREACHABLE: "Cannot reach the server: check the network and the server address.",
    ConnectionFailure.NOT_CONFIGURED: "WebDAV is not configured: check the URL, username and password.",
}


class ConnectionResult(BaseModel):
    success: bool
    message: str
    failure: Optional[ConnectionFailure] = None

    @classmethod
    def ok(cls) -> "ConnectionResult":
        return cls(success=True, message="Connection successful.")

    @classmethod
    def failed(cls, failure: ConnectionFailure, detail: Optional[str] = None) -> "ConnectionResult":
        message = FAILURE_MESSAGES.get(failure)
        if message is None:
            message = f"Connection failed: {detail or 'unknown error'}"
        return cls(success=False, message=message, failure=failure)


# (to_insert, to_update)
ReconcileResult = Tuple[List[HistoryRecord], List[HistoryRecord]]
