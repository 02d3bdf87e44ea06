"""FastAPI surface over the fleet service for remote inspection and automation."""
from __future__ import annotations

import threading
from typing import Any

from fastapi import FastAPI
from fastapi import HTTPException
from fastapi import status
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST
from prometheus_client import generate_latest

from .. import __version__
from ..errors import FleetError
from ..errors import SessionCreateFailed
from ..errors import WorkspaceNotFound
from ..service import FleetService
from ..state import make_key


def create_app(service: FleetService) -> FastAPI:
    app = FastAPI(title="tmux-fleet", version=__version__)
    # sync endpoints run on a thread pool; the service keeps per-process caches
    lock = threading.Lock()

    def guarded(fn, *args: Any) -> Any:
        with lock:
            try:
                return fn(*args)
            except WorkspaceNotFound as exc:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
            except SessionCreateFailed as exc:
                raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
            except FleetError as exc:
                raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    @app.get("/healthz")
    def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/workspaces")
    def api_workspaces() -> dict[str, Any]:
        snapshot = guarded(lambda: service.refresh(persist=False))
        return {"workspaces": [row.to_dict() for row in snapshot.rows]}

    @app.post("/api/refresh")
    def api_refresh() -> dict[str, Any]:
        snapshot = guarded(service.refresh)
        return {
            "workspaces": [row.to_dict() for row in snapshot.rows],
            "removed": [ws.identity.key for ws in snapshot.removed],
        }

    @app.post("/api/workspaces/{repo}/{name}/session")
    def api_ensure_session(repo: str, name: str) -> dict[str, Any]:
        handle = guarded(service.ensure, make_key(repo, name))
        return {"key": handle.identity.key, "session": handle.name, "created": handle.created}

    @app.delete("/api/workspaces/{repo}/{name}/session")
    def api_destroy_session(repo: str, name: str) -> dict[str, Any]:
        key = make_key(repo, name)
        existed = guarded(service.destroy, key)
        return {"key": key, "destroyed": existed}

    @app.get("/metrics")
    def metrics_endpoint() -> Response:
        payload = generate_latest()
        return Response(content=payload, media_type=CONTENT_TYPE_LATEST)

    return app
