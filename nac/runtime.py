from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock

from .db import utc_now
from .routes import ContainerRoute


@dataclass(frozen=True)
class PassSummary:
    trigger: str
    outcome: str  # promoted|unchanged|invalid|failed
    routes: tuple[ContainerRoute, ...] = ()
    skipped: tuple[tuple[str, str], ...] = ()  # (container, reason)
    reloaded: bool = False
    blamed: str | None = None
    detail: str | None = None
    finished_at: str = field(default_factory=utc_now)


class RuntimeState:
    """In-memory state shared by the watcher and the status API."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.started_at = utc_now()
        self.phase = "idle"  # idle|extracting|generating|validating|promoting|reloading|discarding
        self.routes: tuple[ContainerRoute, ...] = ()  # what the live files serve
        self.last_pass: PassSummary | None = None
        self.passes_run = 0
        self.reload_pending = False

    def set_phase(self, phase: str) -> None:
        with self.lock:
            self.phase = phase

    def get_phase(self) -> str:
        with self.lock:
            return self.phase

    def finish_pass(self, summary: PassSummary, live_routes: tuple[ContainerRoute, ...] | None, reload_pending: bool) -> None:
        """Record a completed pass; `live_routes` is None when the live files did not change."""
        with self.lock:
            self.phase = "idle"
            self.last_pass = summary
            self.passes_run += 1
            self.reload_pending = reload_pending
            if live_routes is not None:
                self.routes = live_routes

    def get_routes(self) -> list[ContainerRoute]:
        with self.lock:
            return list(self.routes)

    def snapshot(self) -> dict:
        with self.lock:
            return {
                "started_at": self.started_at,
                "phase": self.phase,
                "passes_run": self.passes_run,
                "reload_pending": self.reload_pending,
                "route_count": len(self.routes),
                "last_pass": self.last_pass,
            }
