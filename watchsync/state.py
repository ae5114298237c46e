import fcntl
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .models import Backup, HistoryRecord, LocalState
from .settings_registry import SettingsRegistry

logger = logging.getLogger(__name__)


class HistoryStore(Protocol):
    def find_all(self) -> List[HistoryRecord]: ...
    def insert(self, records: List[HistoryRecord]): ...
    def update(self, records: List[HistoryRecord]): ...
    def rekey(self, renamed: Mapping[str, HistoryRecord]): ...


class SettingsStore(Protocol):
    def get_all(self) -> Dict[str, Any]: ...
    def put_all(self, values: Mapping[str, Any]): ...


class BackupStore(Protocol):
    def create_backup(self) -> Backup: ...
    def restore_backup(self, backup: Backup): ...


def now_ms() -> int:
    return int(time.time() * 1000)


class LocalStore:
    """
    JSON-file backed device state: watch history, preferences and site
    configuration. Implements HistoryStore, SettingsStore and BackupStore.
    """

    def __init__(self, path: str, persist: bool = True, retention_ms: int = 60 * 24 * 60 * 60 * 1000,
                 registry: Optional[SettingsRegistry] = None):
        self.path = Path(path)
        self.persist = persist
        self.retention_ms = retention_ms
        self.registry = registry or SettingsRegistry()
        self.state = LocalState()
        self.read_only = False
        self._lock = threading.RLock()
        self._load()

    def _load(self):
        if not self.path.exists():
            logger.info(f"No state file found at {self.path}, creating new.")
            return

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
                self.state = LocalState(**data)
        except Exception as e:
            logger.error(f"Failed to load state: {e}. Starting fresh.", exc_info=True)

    def save(self):
        if not self.persist or self.read_only:
            return

        tmp_path = self.path.with_suffix('.tmp')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Atomic write pattern; the file lock guards against other processes
            with self._lock, open(tmp_path, 'w', encoding='utf-8') as f:
                try:
                    fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    logger.warning("Could not acquire lock for state save. Skipping save cycle.")
                    return

                try:
                    json.dump(self.state.model_dump(mode="json", by_alias=True), f, indent=2, ensure_ascii=False)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

                os.replace(tmp_path, self.path)

        except OSError as e:
            logger.error(f"Failed to save state to {self.path}: {e}")
            # Stay in memory for the rest of the run
            self.read_only = True

    # History

    def find_all(self) -> List[HistoryRecord]:
        """Every record, including ones past the retention window."""
        with self._lock:
            return [r.model_copy() for r in self.state.history.values()]

    def find_recent(self, now: Optional[int] = None) -> List[HistoryRecord]:
        horizon = (now if now is not None else now_ms()) - self.retention_ms
        records = [r for r in self.find_all() if r.create_time >= horizon]
        return sorted(records, key=lambda r: r.create_time, reverse=True)

    def get(self, key: str) -> Optional[HistoryRecord]:
        with self._lock:
            record = self.state.history.get(key)
            return record.model_copy() if record else None

    def insert(self, records: List[HistoryRecord]):
        self._upsert(records)

    def update(self, records: List[HistoryRecord]):
        self._upsert(records)

    def rekey(self, renamed: Mapping[str, HistoryRecord]):
        """
        Moves records whose key changed (old key -> record under its new key).
        If the new key is already taken the newer createTime wins.
        """
        if not renamed:
            return
        with self._lock:
            for old_key, record in renamed.items():
                self.state.history.pop(old_key, None)
                existing = self.state.history.get(record.key)
                if existing is None or record.create_time > existing.create_time:
                    self.state.history[record.key] = record.model_copy()
        self.save()
        logger.info(f"Re-keyed {len(renamed)} history records")

    def _upsert(self, records: List[HistoryRecord]):
        if not records:
            return
        with self._lock:
            for record in records:
                self.state.history[record.key] = record.model_copy()
        self.save()

    # Settings

    def get_all(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self.state.settings)

    def put_all(self, values: Mapping[str, Any]):
        if not values:
            return
        with self._lock:
            self.state.settings.update(values)
        self.save()

    # Backup

    def create_backup(self) -> Backup:
        with self._lock:
            return Backup(
                config=[dict(c) for c in self.state.config],
                history=[r.model_copy() for r in self.state.history.values()],
                settings=dict(self.state.settings),
            )

    def restore_backup(self, backup: Backup):
        with self._lock:
            self.state.config = [dict(c) for c in backup.config]
            for record in backup.history:
                if record.key:
                    self.state.history[record.key] = record.model_copy()
            self.state.settings.update(self.registry.filter_incoming(backup.settings))
        self.save()
        logger.info(f"Restored backup: {len(backup.config)} configs, {len(backup.history)} history records")
