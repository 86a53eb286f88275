"""Accounts router — /api/accounts/*, /api/accounts/import|export|mirror and /api/status/* endpoints."""

import time

from fastapi import APIRouter, HTTPException, Query, Response
from starlette.requests import Request

from minesync import transfer
from minesync.deps import get_server
from minesync.models import RegisterAccountRequest
from minesync.resolver import format_countdown, resolve

router = APIRouter()


def _public_account(acct: dict) -> dict:
    # Never echo the access token back to the dashboard
    return {
        "phone_number": acct["phone_number"],
        "user_id": acct["user_id"],
        "username": acct["username"] or acct["phone_number"],
        "created_at": acct["created_at"],
    }


@router.get("/api/accounts")
async def list_accounts(request: Request):
    srv = get_server(request)
    if not srv.monitor.last_tick_at:
        await srv.monitor.tick()
    now = time.time()
    accounts = await srv.mining.list_accounts()
    statuses = srv.monitor.snapshot(now)
    items = []
    for phone, acct in accounts.items():
        entry = _public_account(acct)
        entry["status"] = statuses.get(phone)
        items.append(entry)
    return {"items": items, "total": len(items)}


@router.post("/api/accounts")
async def register_account(request: Request, req: RegisterAccountRequest):
    srv = get_server(request)
    try:
        acct = await srv.mining.register_account(
            req.phone_number,
            user_id=req.user_id,
            access_token=req.access_token,
            username=req.username,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return _public_account(acct)


@router.get("/api/accounts/export")
async def export_accounts(request: Request, fmt: str = Query(default="json", alias="format", pattern="^(json|csv)$")):
    srv = get_server(request)
    accounts = await srv.mining.export_accounts()
    filename = f"accounts-{time.strftime('%Y-%m-%d')}.{fmt}"
    return Response(
        content=transfer.export_accounts(accounts, fmt),
        media_type=transfer.MEDIA_TYPES[fmt],
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@router.post("/api/accounts/import")
async def import_accounts(request: Request, fmt: str = Query(default="json", alias="format", pattern="^(json|csv)$")):
    srv = get_server(request)
    try:
        text = (await request.body()).decode("utf-8")
        rows = transfer.parse_accounts(text, fmt)
    except ValueError as e:
        # UnicodeDecodeError is a ValueError too
        raise HTTPException(status_code=400, detail=str(e))
    result = await srv.mining.import_accounts(rows)
    return result.to_dict()


@router.post("/api/accounts/mirror")
async def mirror_accounts(request: Request):
    srv = get_server(request)
    try:
        result = await srv.mining.mirror_accounts()
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return result.to_dict()


@router.delete("/api/accounts/{phone_number}")
async def remove_account(request: Request, phone_number: str):
    srv = get_server(request)
    if not await srv.mining.remove_account(phone_number):
        raise HTTPException(status_code=404, detail="Account not found")
    return {"phone_number": phone_number, "removed": True}


@router.post("/api/accounts/{phone_number}/mine")
async def start_mining(request: Request, phone_number: str):
    srv = get_server(request)
    try:
        result = await srv.mining.start_mining(phone_number)
    except KeyError:
        raise HTTPException(status_code=404, detail="Account not found")
    await srv.monitor.tick()
    response = result.to_dict()
    response["status"] = srv.monitor.snapshot().get(phone_number)
    return response


@router.get("/api/status/{phone_number}")
async def session_status(request: Request, phone_number: str):
    srv = get_server(request)
    record = await srv.storage.records.get(phone_number)
    if record is None:
        raise HTTPException(status_code=404, detail="No mining record for this account")
    now = time.time()
    status = resolve(record, now, srv.monitor.config)
    result = status.to_dict()
    result["countdown"] = format_countdown(status, now)
    result["updated_at"] = record.updated_at
    return result
