from __future__ import annotations

import secrets
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from . import db
from .api_models import ReloadOut, ReloadRequest, RouteOut, ServiceOut, StatusOut
from .errors import RouteError, StopError, UnknownService
from .gateway import Gateway
from .settings import settings
from .supervisor import Supervisor


security = HTTPBasic()


def create_app(
    supervisor: Supervisor,
    gateway: Gateway,
    admin_user: str | None = None,
    admin_password: str | None = None,
) -> FastAPI:
    """Read-only status endpoint plus two authenticated operator actions."""
    app = FastAPI(title="meshgate status")
    user = admin_user if admin_user is not None else settings.admin_user
    password = admin_password if admin_password is not None else settings.admin_password

    def require_admin(credentials: HTTPBasicCredentials = Depends(security)) -> str:
        if not user or not password:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator actions are disabled.")
        ok_user = secrets.compare_digest(credentials.username.encode(), user.encode())
        ok_pass = secrets.compare_digest(credentials.password.encode(), password.encode())
        if not (ok_user and ok_pass):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Basic"},
            )
        return credentials.username

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/status", response_model=StatusOut)
    def get_status() -> StatusOut:
        return StatusOut(
            services=[ServiceOut.from_status(s) for s in supervisor.statuses()],
            routes=[RouteOut.from_status(r) for r in gateway.route_statuses()],
        )

    @app.get("/services/{name}", response_model=ServiceOut)
    def get_service(name: str) -> ServiceOut:
        try:
            return ServiceOut.from_status(supervisor.status(name))
        except UnknownService as e:
            raise HTTPException(status_code=404, detail=str(e)) from e

    @app.get("/events")
    def get_events(limit: int = Query(100, ge=1, le=1000), service: str | None = None) -> list[dict[str, Any]]:
        return db.latest_events(limit=limit, service_name=service)

    @app.post("/routes/reload", response_model=ReloadOut)
    def reload_routes(req: ReloadRequest, username: str = Depends(require_admin)) -> ReloadOut:
        db.log_event("INFO", f"Route reload requested by {username}")
        try:
            table = gateway.reload(req.path)
        except (RouteError, OSError) as e:
            raise HTTPException(status_code=422, detail=str(e)) from e
        return ReloadOut(routes=len(table.rules), listeners=sorted(table.listeners))

    @app.post("/services/{name}/restart", response_model=ServiceOut)
    def restart_service(name: str, username: str = Depends(require_admin)) -> ServiceOut:
        db.log_event("INFO", f"Restart requested by {username}", service_name=name)
        try:
            err = supervisor.restart(name)
        except UnknownService as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        except StopError as e:
            raise HTTPException(status_code=409, detail=str(e)) from e
        if err is not None:
            raise HTTPException(status_code=409, detail=str(err))
        return ServiceOut.from_status(supervisor.status(name))

    return app
