import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

SYNC_CONFIG_PREFIX = "webdav_"
DEVICE_IDENTITY_KEYS = frozenset({"device_uuid", "device_name"})


class SettingSpec(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str
    type: Any
    syncable: bool = True


DEFAULT_SPECS: Tuple[SettingSpec, ...] = (
    # Sync configuration, never copied between devices
    SettingSpec(name="webdav_sync_mode", type=str, syncable=False),
    SettingSpec(name="webdav_url", type=str, syncable=False),
    SettingSpec(name="webdav_username", type=str, syncable=False),
    SettingSpec(name="webdav_password", type=str, syncable=False),
    SettingSpec(name="webdav_sync_code", type=str, syncable=False),
    SettingSpec(name="webdav_public_url", type=str, syncable=False),
    # Device identity
    SettingSpec(name="device_uuid", type=str, syncable=False),
    SettingSpec(name="device_name", type=str, syncable=False),
    # Playback and UI preferences
    SettingSpec(name="player", type=int),
    SettingSpec(name="decode", type=int),
    SettingSpec(name="render", type=int),
    SettingSpec(name="scale", type=int),
    SettingSpec(name="speed", type=float),
    SettingSpec(name="buffer", type=int),
    SettingSpec(name="caption", type=bool),
    SettingSpec(name="tunnel", type=bool),
    SettingSpec(name="incognito", type=bool),
    SettingSpec(name="language", type=int),
    SettingSpec(name="size", type=int),
    SettingSpec(name="wall", type=int),
    SettingSpec(name="keyword", type=list),
)


class SettingsRegistry:
    def __init__(self, specs: Iterable[SettingSpec] = DEFAULT_SPECS):
        self.specs: Dict[str, SettingSpec] = {s.name: s for s in specs}
        self._adapters: Dict[str, TypeAdapter] = {s.name: TypeAdapter(s.type) for s in self.specs.values()}

    def get(self, name: str) -> Optional[SettingSpec]:
        return self.specs.get(name)

    def is_syncable(self, name: str) -> bool:
        spec = self.specs.get(name)
        if spec is not None:
            return spec.syncable
        # Unregistered keys fall back to the naming convention
        return not (name.startswith(SYNC_CONFIG_PREFIX) or name in DEVICE_IDENTITY_KEYS)

    def coerce(self, name: str, value: Any) -> Any:
        """Validates value against the declared type. Raises ValidationError."""
        adapter = self._adapters.get(name)
        if adapter is None:
            return value
        return adapter.validate_python(value)

    def filter_incoming(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """The subset of values that may be applied locally, coerced to their declared types."""
        accepted = {}
        for name, value in values.items():
            if not self.is_syncable(name):
                logger.debug(f"Skipping non-syncable setting {name}")
                continue
            try:
                accepted[name] = self.coerce(name, value)
            except ValidationError as e:
                logger.warning(f"Skipping setting {name}: invalid value {value!r} ({e.error_count()} errors)")
        return accepted
