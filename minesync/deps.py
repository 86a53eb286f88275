"""Request helpers shared by the router modules."""

from typing import TYPE_CHECKING

from fastapi import HTTPException
from starlette.requests import Request

if TYPE_CHECKING:
    from minesync.server import DashboardServer


def get_server(request: Request) -> "DashboardServer":
    """The DashboardServer behind this app; 503 until its stores are open."""
    srv = request.app.state.server
    if srv.mining is None:
        raise HTTPException(status_code=503, detail="Server is still starting")
    return srv
