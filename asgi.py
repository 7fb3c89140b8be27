"""
asgi.py -- Application assembly for Master Auth.

This is the ONLY file that imports from both api/ and web/. It joins the
backend API and the client routes into a single ASGI app without coupling
them to each other: web/ reaches the backend over HTTP (settings.api_url),
never by importing it.

Run with:  uvicorn asgi:app --reload
           python main.py serve
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from api.main import app, settings
from web.routes import init_client_state
from web.routes import router as web_router

_api_lifespan = app.router.lifespan_context


@asynccontextmanager
async def lifespan(app_: FastAPI) -> AsyncIterator[None]:
    """Run the backend lifespan, then give the client routes their HTTP client."""
    async with _api_lifespan(app_):
        async with httpx.AsyncClient(timeout=settings.gateway_timeout_seconds) as http_client:
            init_client_state(app_, settings, http_client)
            yield


app.router.lifespan_context = lifespan

# Mount the client router here, not in api/main.py.
app.include_router(web_router, tags=["Client"])
