from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from threading import Thread

import requests
import uvicorn
from docker.errors import DockerException
from requests.exceptions import RequestException

from nac import db, nginx_conf, reloader
from nac.docker_ops import docker_available, make_client, network_exists
from nac.health import check_proxy_health
from nac.settings import Settings, settings as default_settings
from nac.watcher import EventSourceLost, Watcher, WatcherLocked, instance_lock

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False, default=str))


def configure_logging(settings: Settings) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )


def _start_status_api(watcher: Watcher, settings: Settings) -> None:
    from main import create_app

    config = uvicorn.Config(
        create_app(watcher, settings),
        host=settings.status_host,
        port=settings.status_port,
        log_config=None,
    )
    server = uvicorn.Server(config)
    Thread(target=server.run, name="nac-status-api", daemon=True).start()
    db.log_event("INFO", f"Status API listening on {settings.status_host}:{settings.status_port}")


def cmd_run(settings: Settings) -> int:
    """Exit status is always non-zero: the watcher only stops when something is wrong."""
    db.init_db()
    try:
        client = make_client()
        events_client = make_client()
    except DockerException as e:
        db.log_event("ERROR", f"Docker is not available: {e}")
        return 1
    if not docker_available(client):
        db.log_event("ERROR", "Docker is not available; exiting so the supervisor can retry.")
        return 1
    try:
        with instance_lock(settings.lock_file):
            watcher = Watcher(client, settings, events_client=events_client)
            if settings.status_port:
                _start_status_api(watcher, settings)
            watcher.run()
    except WatcherLocked as e:
        db.log_event("ERROR", str(e))
    except EventSourceLost:
        # Already journaled by the watcher; the supervisor restarts us.
        pass
    return 1


def cmd_rebuild(settings: Settings) -> int:
    db.init_db()
    try:
        with instance_lock(settings.lock_file):
            summary = Watcher(make_client(), settings).rebuild("cli")
    except WatcherLocked as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    _print(
        {
            "outcome": summary.outcome,
            "reloaded": summary.reloaded,
            "routes": [asdict(r) for r in summary.routes],
            "skipped": [{"container": n, "reason": why} for n, why in summary.skipped],
            "blamed": summary.blamed,
            "detail": summary.detail,
        }
    )
    return 0 if summary.outcome in {"promoted", "unchanged"} else 1


def cmd_render(settings: Settings) -> int:
    routes, skipped = Watcher(make_client(), settings).collect_routes()
    rendered = nginx_conf.render(routes, settings)
    for name, why in skipped:
        print(f"# skipped {name}: {why}", file=sys.stderr)
    print(f"# ---- {settings.upstreams_file}")
    print(rendered.upstreams, end="")
    print(f"# ---- {settings.servers_file}")
    print(rendered.servers, end="")
    return 0


def cmd_diagnose(settings: Settings) -> int:
    checks: list[dict] = []

    def check(name: str, ok: bool, detail: str = "") -> None:
        checks.append({"check": name, "ok": ok, "detail": detail})

    try:
        client = make_client()
        reachable = docker_available(client)
    except DockerException as e:
        client, reachable = None, False
        check("docker", False, str(e))
    else:
        check("docker", reachable, "daemon reachable" if reachable else "ping failed")

    if client is not None and reachable:
        has_net = network_exists(client, settings.docker_network)
        check("network", has_net, settings.docker_network)
        if has_net:
            routes, skipped = Watcher(client, settings).collect_routes()
            check("routes", True, f"{len(routes)} routed, {len(skipped)} skipped")

    for fname in (settings.upstreams_file, settings.servers_file):
        path = os.path.join(settings.conf_dir, fname)
        check(f"live:{fname}", os.path.isfile(path), path)

    live = reloader.validate_live(settings)
    check("nginx -t", live.ok, live.output)

    ok, msg, latency = check_proxy_health(settings.proxy_health_url)
    check("proxy health", ok, f"{settings.proxy_health_url}: {msg} ({latency} ms)")

    _print(checks)
    return 0 if all(c["ok"] for c in checks) else 1


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="nac", description="Nginx auto-configuration for Docker containers")
    p.add_argument("--api", default=None, help="Status API base URL (default: from NAC_STATUS_HOST/PORT)")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Watch docker events and keep nginx configured (long-running)")
    sub.add_parser("rebuild", help="Run one full rebuild pass and exit")
    sub.add_parser("render", help="Print the configuration that would be generated")
    sub.add_parser("diagnose", help="Check docker, network, live files, nginx and the proxy health endpoint")

    sub.add_parser("status", help="Show watcher status")
    sub.add_parser("routes", help="Show active routes")
    s_passes = sub.add_parser("passes", help="Show recent rebuild passes")
    s_passes.add_argument("--limit", type=int, default=20)
    s_ev = sub.add_parser("events", help="Show journal events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)
    settings = default_settings

    if args.cmd == "run":
        configure_logging(settings)
        return cmd_run(settings)
    if args.cmd in {"rebuild", "render"}:
        try:
            if args.cmd == "rebuild":
                configure_logging(settings)
                return cmd_rebuild(settings)
            return cmd_render(settings)
        except (DockerException, RequestException) as e:
            print(f"error: docker is not available: {e}", file=sys.stderr)
            return 1
    if args.cmd == "diagnose":
        return cmd_diagnose(settings)

    base = (args.api or f"http://{settings.status_host}:{settings.status_port}").rstrip("/")

    if args.cmd == "status":
        r = requests.get(f"{base}/status", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "routes":
        _print(requests.get(f"{base}/routes", timeout=10).json())
        return 0

    if args.cmd == "passes":
        _print(requests.get(f"{base}/passes", params={"limit": args.limit}, timeout=10).json())
        return 0

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
