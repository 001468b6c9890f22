"""Render active routes into the two consolidated nginx include files.

`upstreams.conf` holds one upstream per route; `servers.conf` holds the default
(path-routed) server and one server block per virtual host. Both are meant to be
included inside the proxy's `http {}` block. Rendering is a pure function of the
route set: routes are sorted by container name and nothing time-dependent is
written, so unchanged containers produce byte-identical files.
"""
from __future__ import annotations

import os
from dataclasses import dataclass

from . import db
from .routes import ContainerRoute
from .settings import Settings

HEADER = "# Managed by nac. Regenerated on every container start/stop; manual edits are lost."
ROUTE_MARKER = "# container: "
HEALTH_PATH = "/health"

PROXY_HEADERS = (
    "proxy_set_header Host $host;",
    "proxy_set_header X-Real-IP $remote_addr;",
    "proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
    "proxy_set_header X-Forwarded-Proto $scheme;",
    "proxy_http_version 1.1;",
    "proxy_set_header Upgrade $http_upgrade;",
    'proxy_set_header Connection "upgrade";',
)


class GenerationError(RuntimeError):
    """A route reached the renderer in a shape that cannot be rendered."""


@dataclass(frozen=True)
class RenderedConfig:
    upstreams: str
    servers: str
    routes: tuple[ContainerRoute, ...]
    dropped: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class StagedConfig:
    upstreams_path: str
    servers_path: str
    test_conf_path: str
    rendered: RenderedConfig

    @property
    def files(self) -> list[tuple[str, str]]:
        """(staged path, content) for each file that goes live."""
        return [
            (self.upstreams_path, self.rendered.upstreams),
            (self.servers_path, self.rendered.servers),
        ]


def _check(route: ContainerRoute) -> None:
    if not route.address or not 1 <= int(route.port) <= 65535:
        raise GenerationError(f"route for {route.name!r} has no usable target: {route.address}:{route.port}")
    if not route.path.startswith("/"):
        raise GenerationError(f"route for {route.name!r} has a relative path: {route.path!r}")


def _regex_literal(path: str) -> str:
    # Paths are restricted to [A-Za-z0-9._~/-]; only "." is special in PCRE.
    return path.replace(".", r"\.")


def _location_lines(route: ContainerRoute, proxy_timeout_s: int) -> list[str]:
    lines = [f"    {ROUTE_MARKER}{route.name}"]
    proxy = [f"        proxy_pass http://{route.upstream};"]
    proxy += [f"        {h}" for h in PROXY_HEADERS]
    proxy += [
        f"        proxy_connect_timeout {proxy_timeout_s}s;",
        f"        proxy_send_timeout {proxy_timeout_s}s;",
        f"        proxy_read_timeout {proxy_timeout_s}s;",
    ]

    if route.path == "/":
        lines.append("    location / {")
        lines += proxy
        lines.append("    }")
        return lines

    prefix = route.path
    lines += [
        f"    location = {prefix} {{",
        f"        return 301 {prefix}/$is_args$args;",
        "    }",
        "",
        f"    location {prefix}/ {{",
        f"        rewrite ^{_regex_literal(prefix)}/(.*)$ /$1 break;",
    ]
    lines += proxy
    lines.append("    }")
    return lines


def _hosts(route: ContainerRoute) -> list[str]:
    return route.host.split() if route.host else [""]


def _dedupe(routes: list[ContainerRoute]) -> tuple[list[ContainerRoute], list[tuple[str, str]]]:
    """Keep the first route (by name) for every (host name, path) pair.

    A route is dropped whole when any of its host names collides. The default
    server's health location is reserved.
    """
    seen: set[tuple[str, str]] = {("", HEALTH_PATH)}
    kept: list[ContainerRoute] = []
    dropped: list[tuple[str, str]] = []
    for r in routes:
        keys = [(h, r.path) for h in _hosts(r)]
        clash = next((k for k in keys if k in seen), None)
        if clash == ("", HEALTH_PATH):
            dropped.append((r.name, f"{HEALTH_PATH} is reserved for the proxy health endpoint"))
            continue
        if clash is not None:
            host, path = clash
            dropped.append((r.name, f"another container already serves {host or '<default server>'}{path}"))
            continue
        seen.update(keys)
        kept.append(r)
    return kept, dropped


def render(routes: list[ContainerRoute], settings: Settings) -> RenderedConfig:
    """Render both include files from the complete set of active routes."""
    ordered = sorted(routes, key=lambda r: r.name)
    names = [r.name for r in ordered]
    if len(set(names)) != len(names):
        raise GenerationError("more than one route per container name")
    for r in ordered:
        _check(r)

    kept, dropped = _dedupe(ordered)

    up: list[str] = [HEADER]
    for r in kept:
        up += [
            "",
            f"{ROUTE_MARKER}{r.name}",
            f"upstream {r.upstream} {{",
            f"    server {r.address}:{r.port};",
            "}",
        ]

    sv: list[str] = [
        HEADER,
        "",
        "server {",
        f"    listen {settings.listen_port} default_server;",
        "    server_name _;",
        "",
        f"    location = {HEALTH_PATH} {{",
        "        access_log off;",
        "        default_type text/plain;",
        '        return 200 "healthy\\n";',
        "    }",
    ]
    for r in (x for x in kept if not x.host):
        sv.append("")
        sv += _location_lines(r, settings.proxy_timeout_s)
    sv.append("}")

    # One server block per host name; a multi-host route appears in each.
    by_host: dict[str, list[ContainerRoute]] = {}
    for r in kept:
        if r.host:
            for host in r.host.split():
                by_host.setdefault(host, []).append(r)
    for host in sorted(by_host):
        sv += [
            "",
            "server {",
            f"    listen {settings.listen_port};",
            f"    server_name {host};",
        ]
        for r in by_host[host]:
            sv.append("")
            sv += _location_lines(r, settings.proxy_timeout_s)
        sv.append("}")

    return RenderedConfig(
        upstreams="\n".join(up) + "\n",
        servers="\n".join(sv) + "\n",
        routes=tuple(kept),
        dropped=tuple(dropped),
    )


def _test_conf(staging_dir: str, upstreams_path: str, servers_path: str) -> str:
    return "\n".join(
        [
            "# Validation wrapper for the staged nac configuration; never loaded by the live proxy.",
            f"pid {os.path.join(staging_dir, 'nginx.test.pid')};",
            "error_log stderr;",
            "events {}",
            "http {",
            "    access_log off;",
            f"    include {upstreams_path};",
            f"    include {servers_path};",
            "}",
            "",
        ]
    )


def generate(routes: list[ContainerRoute], settings: Settings) -> StagedConfig:
    """Render and write the candidate configuration to the staging directory."""
    rendered = render(routes, settings)
    for name, why in rendered.dropped:
        db.log_event("WARN", f"Dropped route: {why}", container=name)

    staging = os.path.abspath(settings.staging_dir)
    os.makedirs(staging, exist_ok=True)
    upstreams_path = os.path.join(staging, settings.upstreams_file)
    servers_path = os.path.join(staging, settings.servers_file)
    test_conf_path = os.path.join(staging, settings.test_conf_file)

    staged = StagedConfig(
        upstreams_path=upstreams_path,
        servers_path=servers_path,
        test_conf_path=test_conf_path,
        rendered=rendered,
    )
    outputs = staged.files + [(test_conf_path, _test_conf(staging, upstreams_path, servers_path))]
    try:
        for path, content in outputs:
            with open(path, "w", encoding="utf-8") as f:
                f.write(content)
    except OSError:
        for path, _ in outputs:
            if os.path.exists(path):
                os.remove(path)
        raise
    return staged
