from __future__ import annotations

from pydantic import BaseModel, Field

from .routes import ContainerRoute
from .runtime import PassSummary


class RouteOut(BaseModel):
    name: str
    address: str
    port: int = Field(..., ge=1, le=65535)
    path: str
    host: str | None = None
    upstream: str

    @classmethod
    def from_route(cls, r: ContainerRoute) -> "RouteOut":
        return cls(name=r.name, address=r.address, port=r.port, path=r.path, host=r.host, upstream=r.upstream)


class PassOut(BaseModel):
    trigger: str
    outcome: str = Field(..., description="promoted|unchanged|invalid|failed")
    route_count: int
    reloaded: bool
    blamed: str | None = None
    detail: str | None = None
    finished_at: str | None = None

    @classmethod
    def from_summary(cls, s: PassSummary) -> "PassOut":
        return cls(
            trigger=s.trigger,
            outcome=s.outcome,
            route_count=len(s.routes),
            reloaded=s.reloaded,
            blamed=s.blamed,
            detail=s.detail,
            finished_at=s.finished_at,
        )


class ProxyHealthOut(BaseModel):
    url: str
    healthy: bool
    message: str
    latency_ms: float | None = None


class StatusOut(BaseModel):
    started_at: str
    phase: str
    passes_run: int
    reload_pending: bool
    rebuild_queued: bool
    route_count: int
    network: str
    conf_dir: str
    last_pass: PassOut | None = None
    proxy: ProxyHealthOut | None = None


class RebuildRequestIn(BaseModel):
    reason: str = Field("manual", max_length=200, description="Recorded as the pass trigger")
