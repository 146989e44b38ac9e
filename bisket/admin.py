from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from fastapi import FastAPI, Query, Request
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import events
from .errors import BisketError

if TYPE_CHECKING:
    from .controller import Controller

logger = logging.getLogger(__name__)


class AdminOperation(str, Enum):
    LIST_APPS = "/apps"
    REFRESH_TAGS = "/repo/tags/refresh"
    LIST_EVENTS = "/events"


def create_admin_app(controller: "Controller") -> FastAPI:
    app = FastAPI(title="bisket admin", docs_url=None, redoc_url=None, openapi_url=None)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> PlainTextResponse:
        text = "Not found" if exc.status_code == 404 else str(exc.detail)
        return PlainTextResponse(text, status_code=exc.status_code)

    @app.get(AdminOperation.LIST_APPS.value, response_class=PlainTextResponse)
    def list_apps() -> str:
        lines = [inst.describe() for inst in controller.pool.list_instances()]
        return "".join(f"{line}\n" for line in lines)

    @app.post(AdminOperation.REFRESH_TAGS.value, response_class=PlainTextResponse)
    def refresh_tags():
        try:
            controller.refresh()
        except BisketError as e:
            return PlainTextResponse(str(e), status_code=500)
        except Exception as e:
            logger.exception("Tag refresh failed")
            return PlainTextResponse(f"{type(e).__name__}: {e}", status_code=500)
        return "Tags refreshed"

    @app.get(AdminOperation.LIST_EVENTS.value)
    def list_events(limit: int = Query(50, ge=1, le=1000)):
        return events.latest_events(limit)

    return app
