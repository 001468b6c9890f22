"""Event watcher: turns docker container events into serialized full rebuilds.

One reader thread consumes the docker event stream and drops rebuild requests
into a single-slot mailbox; the worker (whoever calls `Watcher.run`) takes them
one at a time and runs a complete pass. Requests that arrive while one is
already pending merge into it, since every pass rebuilds from the full
container set anyway.
"""
from __future__ import annotations

import fcntl
import os
import subprocess
import time
from contextlib import contextmanager
from dataclasses import dataclass
from threading import Condition, Thread
from typing import Any, Callable, Iterator

import docker
from docker.errors import DockerException
from requests.exceptions import RequestException

from . import db, nginx_conf, reloader
from .docker_ops import event_stream, list_network_containers, parse_event
from .nginx_conf import GenerationError
from .routes import ContainerRoute, LabelError, NotApplicable, extract_route
from .runtime import PassSummary, RuntimeState
from .settings import Settings, settings as default_settings

START_ACTIONS = {"start"}
STOP_ACTIONS = {"stop", "die"}


class EventSourceLost(RuntimeError):
    """The docker event stream ended or failed; the process should exit for its supervisor."""


class WatcherLocked(RuntimeError):
    """Another watcher already owns the staged/live configuration files."""


@contextmanager
def instance_lock(path: str) -> Iterator[None]:
    """Exclusive, non-blocking flock held for the lifetime of the block."""
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise WatcherLocked(f"another watcher holds {path}") from None
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        yield
    finally:
        os.close(fd)


@dataclass(frozen=True)
class RebuildRequest:
    reason: str
    settle: bool = False


class RebuildMailbox:
    """Single-slot, coalescing hand-off between the event reader and the worker."""

    def __init__(self) -> None:
        self._cond = Condition()
        self._pending: RebuildRequest | None = None
        self._lost: str | None = None

    def request(self, reason: str, settle: bool = False) -> None:
        with self._cond:
            if self._pending is None:
                self._pending = RebuildRequest(reason=reason, settle=settle)
            else:
                self._pending = RebuildRequest(
                    reason=f"{self._pending.reason}, {reason}",
                    settle=self._pending.settle or settle,
                )
            self._cond.notify()

    def close(self, reason: str) -> None:
        with self._cond:
            self._lost = reason
            self._cond.notify()

    def take(self) -> RebuildRequest:
        """Block for the next request; a pending request is served before a closed source is reported."""
        with self._cond:
            while self._pending is None and self._lost is None:
                self._cond.wait()
            if self._pending is not None:
                req, self._pending = self._pending, None
                return req
            raise EventSourceLost(self._lost)

    def pending(self) -> RebuildRequest | None:
        with self._cond:
            return self._pending


class Watcher:
    """Keeps the generated nginx configuration converged with the running containers."""

    def __init__(
        self,
        client: docker.DockerClient,
        settings: Settings = default_settings,
        runtime: RuntimeState | None = None,
        events_client: docker.DockerClient | None = None,
        runner: Callable[..., subprocess.CompletedProcess] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.events_client = events_client or client
        self.settings = settings
        self.runtime = runtime or RuntimeState()
        self.runner = runner or subprocess.run
        self.sleep = sleep
        self.mailbox = RebuildMailbox()
        self._reader: Thread | None = None

    # --- extraction -------------------------------------------------------

    def collect_routes(self) -> tuple[list[ContainerRoute], list[tuple[str, str]]]:
        """Routes for every qualifying running container, plus (name, reason) for the rest.

        Docker errors propagate: without a complete container list there is no full rebuild.
        """
        routes: list[ContainerRoute] = []
        skipped: list[tuple[str, str]] = []
        for info in list_network_containers(self.client, self.settings.docker_network):
            if not info.running:
                skipped.append((info.name, "not running"))
                continue
            try:
                result = extract_route(
                    info,
                    self.settings.docker_network,
                    path_prefix=self.settings.path_prefix,
                    address_mode=self.settings.address_mode,
                )
            except LabelError as e:
                db.log_event("WARN", f"Skipping container: {e}", container=info.name)
                skipped.append((info.name, str(e)))
                continue
            if isinstance(result, NotApplicable):
                db.logger.debug(f"[{info.name}] not routed: {result.reason}")
                skipped.append((info.name, result.reason))
                continue
            routes.append(result)
        return routes, skipped

    # --- one pass -----------------------------------------------------------

    def rebuild(self, trigger: str) -> PassSummary:
        """Extract → generate → validate → promote/discard, start to finish."""
        rt = self.runtime
        reload_pending = rt.reload_pending

        rt.set_phase("extracting")
        try:
            routes, skipped = self.collect_routes()
        except (DockerException, RequestException) as e:
            return self._finish(
                PassSummary(trigger=trigger, outcome="failed", detail=f"container inspection failed: {type(e).__name__}: {e}"),
                None,
                reload_pending,
            )

        rt.set_phase("generating")
        try:
            staged = nginx_conf.generate(routes, self.settings)
        except (GenerationError, OSError) as e:
            return self._finish(
                PassSummary(trigger=trigger, outcome="failed", routes=tuple(routes), detail=f"generation failed: {type(e).__name__}: {e}"),
                None,
                reload_pending,
            )

        try:
            res = reloader.promote(
                staged,
                self.settings,
                force_reload=reload_pending,
                runner=self.runner,
                on_phase=rt.set_phase,
            )
        except OSError as e:
            reloader.discard(staged)
            return self._finish(
                PassSummary(trigger=trigger, outcome="failed", routes=staged.rendered.routes, detail=f"promotion failed: {e}"),
                None,
                reload_pending,
            )

        summary = PassSummary(
            trigger=trigger,
            outcome=res.outcome,
            routes=staged.rendered.routes,
            skipped=tuple(skipped),
            reloaded=res.reloaded,
            blamed=res.blamed,
            detail=res.reload_error or (res.validation_output if res.outcome == "invalid" else None),
        )
        if res.outcome == "invalid":
            return self._finish(summary, None, reload_pending)
        if res.outcome == "promoted" or reload_pending:
            reload_pending = not res.reloaded
        return self._finish(summary, staged.rendered.routes, reload_pending)

    def _finish(
        self,
        summary: PassSummary,
        live_routes: tuple[ContainerRoute, ...] | None,
        reload_pending: bool,
    ) -> PassSummary:
        count = len(summary.routes)
        if summary.outcome == "promoted":
            if summary.reloaded:
                db.log_event("INFO", f"Applied configuration with {count} route(s) ({summary.trigger})")
            else:
                db.log_event("ERROR", f"Configuration with {count} route(s) is live but nginx reload failed: {summary.detail}")
        elif summary.outcome == "unchanged":
            db.logger.debug(f"Configuration unchanged ({summary.trigger})")
            if summary.detail:
                db.log_event("ERROR", f"Retried nginx reload failed: {summary.detail}")
        elif summary.outcome == "invalid":
            db.log_event(
                "ERROR",
                f"nginx rejected the candidate configuration; live configuration kept. {summary.detail}",
                container=summary.blamed,
            )
        else:
            db.log_event("ERROR", f"Rebuild pass failed ({summary.trigger}): {summary.detail}")

        db.record_pass(
            trigger=summary.trigger,
            outcome=summary.outcome,
            route_count=count,
            reloaded=summary.reloaded,
            blamed=summary.blamed,
            detail=summary.detail,
        )
        self.runtime.finish_pass(summary, live_routes, reload_pending)
        return summary

    def safe_rebuild(self, trigger: str) -> PassSummary | None:
        """A pass that can never take the watcher down."""
        try:
            return self.rebuild(trigger)
        except Exception as e:
            self.runtime.set_phase("idle")
            db.log_event("ERROR", f"Rebuild pass crashed: {type(e).__name__}: {e}")
            return None

    # --- events -------------------------------------------------------------

    def handle_event(self, raw: Any) -> None:
        event = parse_event(raw)
        if event is None:
            db.logger.debug(f"Ignoring malformed event: {raw!r}")
            return
        if event.action in START_ACTIONS:
            db.log_event("INFO", "Container started", container=event.name)
            self.mailbox.request(f"start:{event.name}", settle=True)
        elif event.action in STOP_ACTIONS:
            db.log_event("INFO", f"Container {event.action}", container=event.name)
            self.mailbox.request(f"{event.action}:{event.name}")
        else:
            db.logger.debug(f"Ignoring '{event.action}' event for {event.name}")

    def request_rebuild(self, reason: str = "manual") -> None:
        self.mailbox.request(reason)

    def _read_events(self) -> None:
        try:
            for raw in event_stream(self.events_client):
                self.handle_event(raw)
        except Exception as e:
            self.mailbox.close(f"docker event stream failed: {type(e).__name__}: {e}")
            return
        self.mailbox.close("docker event stream ended")

    def start_reader(self) -> None:
        if self._reader and self._reader.is_alive():
            return
        self._reader = Thread(target=self._read_events, name="nac-events", daemon=True)
        self._reader.start()

    def run(self) -> None:
        """Catch up, then serve rebuild requests until the event source is lost.

        Never returns normally: raises EventSourceLost.
        """
        db.init_db()
        db.log_event("INFO", f"Watcher started on network '{self.settings.docker_network}'")
        self.safe_rebuild("startup")
        self.start_reader()
        while True:
            try:
                req = self.mailbox.take()
            except EventSourceLost as e:
                db.log_event("ERROR", f"Event source lost: {e}")
                raise
            if req.settle and self.settings.settle_delay_s > 0:
                self.sleep(self.settings.settle_delay_s)
            self.safe_rebuild(req.reason)
