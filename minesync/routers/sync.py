"""Sync router — /api/sync/* endpoints."""

from fastapi import APIRouter, Query
from starlette.requests import Request

from minesync.deps import get_server

router = APIRouter()


@router.post("/api/sync")
async def run_sync(request: Request, force: bool = Query(default=False)):
    srv = get_server(request)
    accounts = await srv.mining.list_accounts()
    result = await srv.reconciler.sync(force=force, keys=accounts.keys())
    if result.changed:
        await srv.monitor.tick()
    return result.to_dict()


@router.get("/api/sync/status")
async def sync_status(request: Request):
    srv = get_server(request)
    state = srv.reconciler.state
    return {
        "in_progress": state.in_progress,
        "last_sync_at": state.last_sync_at or None,
        "cooldown_sec": srv.reconciler.cooldown_sec,
        "last_result": state.last_result.to_dict() if state.last_result else None,
    }
