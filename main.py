"""Read-only status API for a running watcher, plus a manual rebuild trigger."""
from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, Query, status

from nac import db
from nac.api_models import PassOut, ProxyHealthOut, RebuildRequestIn, RouteOut, StatusOut
from nac.health import check_proxy_health
from nac.runtime import RuntimeState
from nac.settings import Settings, settings as default_settings
from nac.watcher import Watcher


def create_app(watcher: Watcher | None = None, settings: Settings = default_settings) -> FastAPI:
    app = FastAPI(title="Nginx Auto-Config")
    runtime = watcher.runtime if watcher else RuntimeState()

    @app.on_event("startup")
    def startup() -> None:
        db.init_db()

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/routes", response_model=list[RouteOut])
    def routes() -> list[RouteOut]:
        return [RouteOut.from_route(r) for r in runtime.get_routes()]

    @app.get("/status", response_model=StatusOut)
    def get_status(probe: bool = Query(True, description="Also probe the proxy's /health endpoint")) -> StatusOut:
        snap = runtime.snapshot()
        proxy = None
        if probe:
            ok, msg, latency = check_proxy_health(settings.proxy_health_url)
            proxy = ProxyHealthOut(url=settings.proxy_health_url, healthy=ok, message=msg, latency_ms=latency)
        last = snap["last_pass"]
        return StatusOut(
            started_at=snap["started_at"],
            phase=snap["phase"],
            passes_run=snap["passes_run"],
            reload_pending=snap["reload_pending"],
            rebuild_queued=bool(watcher and watcher.mailbox.pending()),
            route_count=snap["route_count"],
            network=settings.docker_network,
            conf_dir=settings.conf_dir,
            last_pass=PassOut.from_summary(last) if last else None,
            proxy=proxy,
        )

    @app.get("/passes")
    def passes(limit: int = Query(20, ge=1, le=500)) -> list[dict[str, Any]]:
        return [asdict(p) for p in db.latest_passes(limit)]

    @app.get("/events")
    def events(limit: int = Query(100, ge=1, le=1000)) -> list[dict[str, Any]]:
        return db.latest_events(limit)

    @app.post("/rebuild", status_code=status.HTTP_202_ACCEPTED)
    def rebuild(req: RebuildRequestIn | None = None) -> dict[str, str]:
        if watcher is None:
            raise HTTPException(status_code=503, detail="No watcher attached to this API.")
        reason = req.reason if req else "manual"
        watcher.request_rebuild(f"api:{reason}")
        db.log_event("INFO", f"Rebuild requested through the API ({reason})")
        return {"status": "queued"}

    return app


app = create_app()
