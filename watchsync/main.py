import asyncio
import logging
import signal
import sys
import time

import uvicorn

from .config import Settings, SyncConfig
from .notify import RefreshNotifier
from .orchestrator import SyncOrchestrator
from .server import create_app
from .settings_registry import SettingsRegistry
from .state import LocalStore

logger = logging.getLogger("main")


def setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # Silence noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


class SyncService:
    def __init__(self, settings: Settings):
        self.running = True
        self.settings = settings
        registry = SettingsRegistry()
        self.store = LocalStore(
            settings.STATE_PATH,
            persist=settings.PERSIST_ENABLED,
            retention_ms=settings.retention_ms,
            registry=registry,
        )
        self.orchestrator = SyncOrchestrator(
            SyncConfig(settings=settings),
            history=self.store,
            settings_store=self.store,
            backups=self.store,
            notifier=RefreshNotifier(),
            registry=registry,
        )

    async def sync_loop(self):
        interval = self.settings.SYNC_INTERVAL_SECONDS
        logger.info(f"Periodic sync every {interval}s")
        while self.running:
            start_time = time.time()
            try:
                if self.orchestrator.is_configured():
                    ok = await asyncio.wrap_future(self.orchestrator.sync_all(run_async=True))
                    if not ok:
                        logger.warning("Periodic sync did not complete successfully")
                else:
                    logger.debug("WebDAV not configured, skipping periodic sync")
            except Exception as e:
                logger.error(f"Error in sync loop: {e}", exc_info=True)

            # Wait for remainder of interval
            elapsed = time.time() - start_time
            await asyncio.sleep(max(1, interval - elapsed))

    async def start(self):
        tasks = []
        if self.settings.SYNC_INTERVAL_SECONDS > 0:
            tasks.append(asyncio.create_task(self.sync_loop()))

        if self.settings.HTTP_SERVER_ENABLED:
            app = create_app(self.orchestrator, self.settings)
            config = uvicorn.Config(app, host="0.0.0.0", port=self.settings.HTTP_SERVER_PORT, log_level="warning")
            tasks.append(asyncio.create_task(uvicorn.Server(config).serve()))

        if not tasks:
            logger.warning("Nothing to run: set SYNC_INTERVAL_SECONDS or HTTP_SERVER_ENABLED")
            return

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            self.running = False
            self.orchestrator.close()
            self.store.save()


def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)


if __name__ == "__main__":
    settings = Settings()
    setup_logging(settings.LOG_LEVEL)
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = SyncService(settings)
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
