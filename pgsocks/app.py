"""HTTP surface for the proxied query service."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import AppSettings, load_settings
from .handler import RequestHandler

LOG = logging.getLogger(__name__)

LIVENESS_MESSAGE = "PG Proxy Test Server is running. Go to /query to test the database connection."


def create_app(settings: AppSettings | None = None, *, handler: RequestHandler | None = None) -> FastAPI:
    """Build the FastAPI application around one request handler."""

    if handler is None:
        handler = RequestHandler(settings or load_settings())

    app = FastAPI(
        title="pgsocks",
        description="Runs a PostgreSQL query through an authenticated SOCKS5 tunnel",
        version="1.0.0",
    )
    app.state.handler = handler

    @app.get("/", response_class=PlainTextResponse)
    async def liveness() -> str:
        return LIVENESS_MESSAGE

    @app.get("/query")
    async def run_query() -> JSONResponse:
        outcome = await handler.run()
        return JSONResponse(status_code=outcome.status_code, content=jsonable_encoder(outcome.to_body()))

    return app


__all__ = ["LIVENESS_MESSAGE", "create_app"]
