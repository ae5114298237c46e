import asyncio
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse

from .config import Settings
from .notify import HISTORY
from .orchestrator import SYNC_TARGETS, SyncOrchestrator


def create_app(orchestrator: SyncOrchestrator, settings: Settings) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Refresh events are delivered on the server loop
        orchestrator.notifier.bind_loop(asyncio.get_running_loop())
        orchestrator.notifier.subscribe(on_refresh)
        try:
            yield
        finally:
            orchestrator.notifier.unsubscribe(on_refresh)
            orchestrator.notifier.bind_loop(None)

    app = FastAPI(title="watchsync", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.history_refreshes = 0

    def on_refresh(event: str):
        if event == HISTORY:
            app.state.history_refreshes += 1

    def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
        if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
            raise HTTPException(status_code=401, detail="Invalid token")

    def get_orchestrator(request: Request) -> SyncOrchestrator:
        return request.app.state.orchestrator

    @app.get("/healthz")
    def healthz(sync: SyncOrchestrator = Depends(get_orchestrator)):
        if not sync.is_configured():
            return {"status": "not_configured"}

        last_sync = sync.last_successful_sync
        # Lenient threshold: report, don't fail the container
        if settings.SYNC_INTERVAL_SECONDS > 0 and time.time() - last_sync > (settings.SYNC_INTERVAL_SECONDS * 3 + 60):
            return {"status": "lagging", "last_sync_age": time.time() - last_sync}

        return {"status": "ok"}

    @app.get("/status", dependencies=[Depends(get_token)])
    def status(sync: SyncOrchestrator = Depends(get_orchestrator)):
        resolved = sync.config.resolve()
        return {
            "configured": sync.is_configured(),
            "mode": resolved.mode.value,
            "base_url": resolved.base_url,
            "syncing": sync.is_syncing,
            "last_sync": sync.last_successful_sync,
            "history_refreshes": app.state.history_refreshes,
        }

    @app.get("/metrics", response_class=PlainTextResponse)
    def metrics(sync: SyncOrchestrator = Depends(get_orchestrator)):
        lines = [
            f'watchsync_configured {int(sync.is_configured())}',
            f'watchsync_syncing {int(sync.is_syncing)}',
            f'watchsync_last_sync_timestamp {sync.last_successful_sync}',
            f'watchsync_history_refreshes_total {app.state.history_refreshes}',
        ]
        return "\n".join(lines)

    @app.get("/connection", dependencies=[Depends(get_token)])
    async def connection(sync: SyncOrchestrator = Depends(get_orchestrator)):
        result = await run_in_threadpool(sync.test_connection)
        return result.model_dump(mode="json")

    @app.post("/sync/{target}", dependencies=[Depends(get_token)])
    async def trigger_sync(target: str, wait: bool = False, sync: SyncOrchestrator = Depends(get_orchestrator)):
        if target not in SYNC_TARGETS:
            raise HTTPException(status_code=404, detail=f"Unknown sync target {target}")

        future = sync.dispatch(target)
        if wait:
            success = future is not None and await asyncio.wrap_future(future)
            return {"target": target, "success": success}
        return {"target": target, "accepted": future is not None}

    @app.post("/backup/{direction}", dependencies=[Depends(get_token)])
    async def backup(direction: str, sync: SyncOrchestrator = Depends(get_orchestrator)):
        if direction == "upload":
            ok = await run_in_threadpool(sync.upload_backup)
        elif direction == "download":
            ok = await run_in_threadpool(sync.download_backup)
        else:
            raise HTTPException(status_code=404, detail=f"Unknown backup direction {direction}")
        return {"direction": direction, "success": ok}

    return app
