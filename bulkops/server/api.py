# bulkops/server/api.py
# HTTP control surface: what the extension popup used to do.
#
# ENDPOINTS (all under /v1):
# - GET    /state      captured targets, credential status, recorded template
# - DELETE /state      forget everything captured
# - POST   /recording  arm/disarm action recording
# - GET    /features   built-in bulk actions
# - POST   /bulk       run a bulk operation and return the buckets
# - GET    /logs       session log lines

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from bulkops import __version__
from bulkops.base.session import CaptureSession
from bulkops.contracts import BulkRequest, BulkResponse, RecordingRequest
from bulkops.errors import BulkOpsError
from bulkops.executor.actions import list_features

logger = logging.getLogger(__name__)


def create_app(
    session: Optional[CaptureSession] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    start_proxy: bool = False,
) -> FastAPI:
    """
    Build the API around one capture session.

    Args:
        session: session to expose (a new one from the global config by default)
        http_client: client used for bulk calls (tests pass a mock transport)
        start_proxy: start the capture proxy with the app
    """
    session = session or CaptureSession()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_proxy:
            await session.start_proxy()
        try:
            yield
        finally:
            session.stop_proxy()

    app = FastAPI(
        title="BulkOps Helper API",
        description="Capture location ids from app traffic and run bulk operations",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.session = session
    app.state.http_client = http_client

    @app.exception_handler(BulkOpsError)
    async def bulkops_error_handler(request: Request, exc: BulkOpsError):
        logger.error(f"[API] {exc.code.value}: {exc.message}")
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    router = APIRouter(prefix="/v1", tags=["v1"])

    @router.get("/state")
    async def get_state() -> Dict[str, Any]:
        return session.to_dict()

    @router.delete("/state")
    async def reset_state() -> Dict[str, Any]:
        session.store.reset()
        session.log("Captured state cleared")
        return session.to_dict()

    @router.post("/recording")
    async def set_recording(body: RecordingRequest) -> Dict[str, bool]:
        session.set_recording(body.active)
        return {"recording": session.store.recording}

    @router.get("/features")
    async def features() -> List[Dict[str, Any]]:
        return list_features()

    @router.post("/bulk", response_model=BulkResponse)
    async def run_bulk(body: BulkRequest) -> BulkResponse:
        run = await session.run_bulk(body, client=app.state.http_client)
        return BulkResponse.from_run(run)

    @router.get("/logs")
    async def logs(limit: int = Query(200, ge=1)) -> List[str]:
        return session.logs[-limit:]

    app.include_router(router)
    return app
