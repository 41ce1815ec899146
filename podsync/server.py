import time
from fastapi import FastAPI, Depends, HTTPException, Header
from fastapi.responses import PlainTextResponse
from typing import Optional
from .config import settings
from .engine import SyncOrchestrator
from .errors import NoSession, SyncError
from .models import SyncPhase
from .store import LocalStore

app = FastAPI(title="podsync")
store: Optional[LocalStore] = None
orchestrator: Optional[SyncOrchestrator] = None

def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")

@app.get("/healthz")
def healthz():
    if not store:
        return {"status": "starting"}

    last_sync = store.get_sync_state().last_progress_sync
    if last_sync is None:
        return {"status": "waiting_for_first_sync"}

    # Lenient threshold: three missed intervals
    age = time.time() - last_sync
    if age > settings.SYNC_INTERVAL_SECONDS * 3 + 60:
        return {"status": "lagging", "last_sync_age": age}

    return {"status": "ok"}

@app.get("/status", dependencies=[Depends(get_token)])
def status():
    if not store or not orchestrator:
        return {"status": "not_ready"}

    config = store.get_server_configuration()
    return {
        "status": orchestrator.status.model_dump(mode="json"),
        "sync_state": store.get_sync_state().model_dump(mode="json"),
        "subscriptions": len(store.fetch_subscriptions(lambda s: s.subscribed)),
        "episodes": len(store.fetch_episodes()),
        "pending_actions": len(store.unsynced_actions()),
        "server": {
            "url": config.server_url,
            "username": config.username,
            "authenticated": config.authenticated,
        },
        "config": {
            "backend": settings.BACKEND,
            "interval": settings.SYNC_INTERVAL_SECONDS,
            "collections": settings.SYNC_COLLECTIONS,
        },
    }

@app.post("/sync", dependencies=[Depends(get_token)])
async def trigger_sync():
    if not orchestrator:
        raise HTTPException(status_code=503, detail="Service is starting")

    try:
        result = await orchestrator.perform_sync()
    except NoSession as e:
        raise HTTPException(status_code=401, detail=e.message)
    except SyncError as e:
        raise HTTPException(status_code=502, detail=e.message)
    return result.model_dump(mode="json")

@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    # Simple prometheus-style text format
    if not store:
        return ""

    s = store.get_sync_state()
    phase = orchestrator.status.phase if orchestrator else SyncPhase.IDLE
    lines = [
        f'podsync_subscriptions {len(store.fetch_subscriptions(lambda sub: sub.subscribed))}',
        f'podsync_episodes {len(store.fetch_episodes())}',
        f'podsync_pending_actions {len(store.unsynced_actions())}',
        f'podsync_last_progress_sync_timestamp {s.last_progress_sync or 0}',
        f'podsync_syncs_total {s.total_syncs}',
        f'podsync_syncs_failed_total {s.failed_syncs}',
        f'podsync_sync_running {1 if phase == SyncPhase.RUNNING else 0}',
    ]
    return "\n".join(lines) + "\n"
