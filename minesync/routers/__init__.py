"""Router package — collects all API routers and registers them on the FastAPI app."""

from fastapi import FastAPI

from minesync.routers import accounts, sync


def register_all_routers(app: FastAPI):
    app.include_router(accounts.router)
    app.include_router(sync.router)
