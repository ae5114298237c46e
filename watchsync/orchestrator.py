import json
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from pydantic import TypeAdapter

from .clients.webdav_client import RemoteStore
from .config import SyncConfig, SyncMode
from .encoding import repair_record
from .engine import ReconciliationEngine
from .models import Backup, ConnectionFailure, ConnectionResult, HistoryRecord
from .notify import RefreshNotifier
from .settings_registry import SettingsRegistry
from .state import BackupStore, HistoryStore, SettingsStore, now_ms
from .sync_state import SyncState

logger = logging.getLogger(__name__)

HISTORY_FILE = "history.json"
SETTINGS_FILE = "settings.json"
BACKUP_FILE = "backup.json"

SYNC_TARGETS = ("history", "settings", "all")

_history_payload = TypeAdapter(List[Optional[HistoryRecord]])


def _resolved(value: bool) -> "Future[bool]":
    future: Future = Future()
    future.set_result(value)
    return future


class SyncOrchestrator:
    """
    Runs upload/download/merge of watch history, settings and full backups
    against the configured remote store.

    Every operation returns a bool and never raises. Composite syncs return a
    Future[bool]: with run_async=False the work runs on the calling thread and
    the future is already resolved.
    """

    def __init__(self, config: SyncConfig, history: HistoryStore, settings_store: SettingsStore,
                 backups: BackupStore, notifier: Optional[RefreshNotifier] = None,
                 engine: Optional[ReconciliationEngine] = None,
                 registry: Optional[SettingsRegistry] = None,
                 executor: Optional[ThreadPoolExecutor] = None,
                 clock: Callable[[], int] = now_ms):
        self.config = config
        self.history = history
        self.settings_store = settings_store
        self.backups = backups
        self.notifier = notifier or RefreshNotifier()
        s = config.settings
        self.engine = engine or ReconciliationEngine(s.SYNC_TIME_TOLERANCE_MS, s.SYNC_PROGRESS_LEAD_MS)
        self.registry = registry or SettingsRegistry()
        self.state = SyncState()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=s.SYNC_WORKERS, thread_name_prefix="watchsync")
        self._clock = clock
        self.last_successful_sync: float = 0.0

    # Configuration

    def is_configured(self) -> bool:
        return self.config.is_configured()

    def reload_config(self):
        self.config.reload_config()

    @property
    def is_syncing(self) -> bool:
        return self.state.is_syncing

    def test_connection(self) -> ConnectionResult:
        store = self.config.store
        if store is None or not self.is_configured():
            logger.warning("Connection test skipped: WebDAV not configured")
            return ConnectionResult.failed(ConnectionFailure.NOT_CONFIGURED)
        return store.test_connection()

    def _store_for(self, operation: str) -> Optional[RemoteStore]:
        if not self.is_configured():
            logger.error(f"WebDAV not configured, cannot {operation}")
            return None
        return self.config.store

    def _prepare_upload(self, store: RemoteStore):
        # Public code-mode endpoints have no collections to create
        if self.config.mode != SyncMode.ACCOUNT:
            return
        try:
            store.ensure_directory(store.base_url)
        except Exception as e:
            logger.warning(f"Could not create {store.base_url}, uploading anyway: {e}")

    # History

    def _load_local_history(self) -> List[HistoryRecord]:
        """Repaired local records, one per key. Repaired keys are written back."""
        by_key: Dict[str, HistoryRecord] = {}
        renamed: Dict[str, HistoryRecord] = {}
        for original in self.history.find_all():
            record = repair_record(original)
            if record.key != original.key:
                renamed[original.key] = record
            kept = by_key.get(record.key)
            if kept is None or record.create_time > kept.create_time:
                by_key[record.key] = record

        if renamed:
            logger.info(f"Repaired {len(renamed)} local history keys")
            self.history.rekey(renamed)
        return list(by_key.values())

    def upload_history(self) -> bool:
        store = self._store_for("upload history")
        if store is None:
            return False

        try:
            records = self._load_local_history()
            payload = json.dumps(
                [r.to_wire() for r in records],
                ensure_ascii=False,
            ).encode("utf-8")

            self._prepare_upload(store)
            url = store.file_url(HISTORY_FILE)
            logger.info(f"Uploading {len(records)} history records ({len(payload)} bytes) to {url}")
            store.write(url, payload)

            if not store.exists(url):
                logger.error(f"History upload to {url} could not be verified")
                return False
            logger.info(f"History upload complete: {len(records)} records")
            return True
        except Exception as e:
            logger.error(f"History upload failed: {e}", exc_info=True)
            return False

    def download_history(self) -> bool:
        store = self._store_for("download history")
        if store is None:
            return False

        try:
            url = store.file_url(HISTORY_FILE)
            if not store.exists(url):
                logger.info("No remote history yet, nothing to download")
                return False

            raw = store.read(url)
            if raw.strip():
                remote = _history_payload.validate_json(raw)
            else:
                logger.info("Remote history file is empty")
                remote = []

            now = self._clock()
            settings = self.config.settings
            horizon = now - settings.retention_ms

            prepared = []
            for record in remote:
                if record is None:
                    continue
                record = repair_record(record)
                # Records past the horizon would be hidden by the local
                # retention filter, so they are re-stamped as touched now.
                if settings.RESURRECT_EXPIRED_HISTORY and record.create_time < horizon:
                    logger.debug(f"Resurrecting expired record {record.vod_name} (createTime={record.create_time})")
                    record = record.model_copy(update={"create_time": now})
                prepared.append(record)

            local = self._load_local_history()
            logger.info(f"Merging {len(prepared)} remote records into {len(local)} local records")

            to_insert, to_update = self.engine.reconcile(local, prepared)
            if to_insert:
                self.history.insert(to_insert)
            if to_update:
                self.history.update(to_update)

            self.notifier.post_history_refresh()
            return True
        except Exception as e:
            logger.error(f"History download failed: {e}", exc_info=True)
            return False

    # Settings

    def upload_settings(self) -> bool:
        store = self._store_for("upload settings")
        if store is None:
            return False

        try:
            values = self.settings_store.get_all()
            payload = json.dumps(values, ensure_ascii=False).encode("utf-8")
            self._prepare_upload(store)
            store.write(store.file_url(SETTINGS_FILE), payload)
            logger.info(f"Settings upload complete: {len(values)} keys")
            return True
        except Exception as e:
            logger.error(f"Settings upload failed: {e}", exc_info=True)
            return False

    def download_settings(self) -> bool:
        store = self._store_for("download settings")
        if store is None:
            return False

        try:
            url = store.file_url(SETTINGS_FILE)
            if not store.exists(url):
                logger.info("No remote settings yet, nothing to download")
                return False

            values = json.loads(store.read(url).decode("utf-8"))
            if not isinstance(values, dict) or not values:
                logger.warning("Remote settings are empty or not a JSON object")
                return False

            accepted = self.registry.filter_incoming(values)
            self.settings_store.put_all(accepted)
            logger.info(f"Settings download complete: applied {len(accepted)} of {len(values)} keys")
            return True
        except Exception as e:
            logger.error(f"Settings download failed: {e}", exc_info=True)
            return False

    # Full backup

    def upload_backup(self) -> bool:
        store = self._store_for("upload backup")
        if store is None:
            return False

        try:
            backup = self.backups.create_backup()
            payload = backup.model_dump_json(by_alias=True).encode("utf-8")
            self._prepare_upload(store)
            store.write(store.file_url(BACKUP_FILE), payload)
            logger.info("Backup upload complete")
            return True
        except Exception as e:
            logger.error(f"Backup upload failed: {e}", exc_info=True)
            return False

    def download_backup(self) -> bool:
        store = self._store_for("download backup")
        if store is None:
            return False

        try:
            url = store.file_url(BACKUP_FILE)
            if not store.exists(url):
                logger.info("No remote backup yet, nothing to download")
                return False

            backup = Backup.model_validate_json(store.read(url))
            if not backup.config:
                logger.warning("Remote backup has no config, not restoring")
                return False

            self.backups.restore_backup(backup)
            logger.info("Backup download and restore complete")
            return True
        except Exception as e:
            logger.error(f"Backup download failed: {e}", exc_info=True)
            return False

    # Composite syncs

    def sync_history(self, run_async: bool = True) -> "Future[bool]":
        return self._submit("history", run_async)

    def sync_settings(self, run_async: bool = True) -> "Future[bool]":
        return self._submit("settings", run_async)

    def sync_all(self, run_async: bool = True) -> "Future[bool]":
        return self._submit("all", run_async)

    def dispatch(self, target: str) -> Optional["Future[bool]"]:
        """
        Schedules a composite sync on the worker pool. Returns None when the
        sync was not started (not configured, already syncing or shut down).
        """
        return self._start(target, run_async=True)

    def _run_history(self) -> bool:
        uploaded = self.upload_history()
        downloaded = self.download_history()
        return uploaded and downloaded

    def _run_settings(self) -> bool:
        uploaded = self.upload_settings()
        downloaded = self.download_settings()
        return uploaded and downloaded

    def _run_all(self) -> bool:
        history_ok = self._run_history()
        # Settings run inline; no nested dispatch
        settings_ok = self._run_settings()
        return history_ok and settings_ok

    def _submit(self, target: str, run_async: bool) -> "Future[bool]":
        future = self._start(target, run_async)
        return future if future is not None else _resolved(False)

    def _start(self, target: str, run_async: bool) -> Optional["Future[bool]"]:
        name, task, guarded = {
            "history": ("history sync", self._run_history, True),
            "settings": ("settings sync", self._run_settings, False),
            "all": ("full sync", self._run_all, True),
        }[target]

        if not self.is_configured():
            logger.warning(f"WebDAV not configured, skipping {name}")
            return None

        if guarded and not self.state.try_begin():
            logger.warning(f"Sync already in progress, skipping {name}")
            return None

        def run() -> bool:
            started = time.time()
            try:
                ok = task()
                if ok:
                    self.last_successful_sync = time.time()
                logger.info(f"{name} finished in {time.time() - started:.1f}s: {'ok' if ok else 'failed'}")
                return ok
            except Exception as e:
                logger.error(f"{name} failed: {e}", exc_info=True)
                return False
            finally:
                if guarded:
                    self.state.end()

        if not run_async:
            return _resolved(run())

        try:
            return self._executor.submit(run)
        except RuntimeError as e:
            # Executor already shut down
            if guarded:
                self.state.end()
            logger.error(f"Could not schedule {name}: {e}")
            return None

    def close(self):
        if self._owns_executor:
            self._executor.shutdown(wait=True)
        if self.config.store is not None:
            self.config.store.close()
