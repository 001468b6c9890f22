from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterator

import docker
from docker.errors import DockerException, NotFound

from .routes import ContainerInfo
from .settings import settings

WATCHED_ACTIONS = ("start", "stop", "die")


@dataclass(frozen=True)
class ContainerEvent:
    action: str
    container_id: str
    name: str


def make_client(timeout: int | None = None) -> docker.DockerClient:
    """Docker client whose API calls give up after `timeout` seconds.

    The events endpoint streams without a timeout regardless.
    """
    return docker.from_env(timeout=timeout or settings.inspect_timeout_s)


def docker_available(client: docker.DockerClient) -> bool:
    try:
        client.ping()
        return True
    except DockerException:
        return False


def network_exists(client: docker.DockerClient, network: str) -> bool:
    try:
        client.networks.get(network)
        return True
    except NotFound:
        return False


def _exposed_ports(config: dict[str, Any]) -> tuple[int, ...]:
    ports: set[int] = set()
    for key in (config.get("ExposedPorts") or {}):
        num, _, proto = str(key).partition("/")
        if proto and proto != "tcp":
            continue
        try:
            ports.add(int(num))
        except ValueError:
            continue
    return tuple(sorted(ports))


def container_info(attrs: dict[str, Any]) -> ContainerInfo:
    """Typed view of a `docker inspect` document."""
    config = attrs.get("Config") or {}
    net_settings = attrs.get("NetworkSettings") or {}
    networks = {
        name: (net or {}).get("IPAddress") or ""
        for name, net in (net_settings.get("Networks") or {}).items()
    }
    return ContainerInfo(
        id=attrs.get("Id", ""),
        name=str(attrs.get("Name", "")).lstrip("/"),
        labels=dict(config.get("Labels") or {}),
        networks=networks,
        exposed_ports=_exposed_ports(config),
        running=bool((attrs.get("State") or {}).get("Running", False)),
    )


def list_network_containers(client: docker.DockerClient, network: str) -> list[ContainerInfo]:
    """Running containers attached to `network`, fully inspected.

    Containers removed between listing and inspection are dropped.
    """
    containers = client.containers.list(
        filters={"network": network, "status": "running"},
        ignore_removed=True,
    )
    return [container_info(c.attrs) for c in containers]


def event_stream(client: docker.DockerClient) -> Iterator[dict[str, Any]]:
    return client.events(
        decode=True,
        filters={"type": "container", "event": list(WATCHED_ACTIONS)},
    )


def parse_event(raw: Any) -> ContainerEvent | None:
    """Pull action, id and name out of a decoded docker event; None if malformed."""
    if not isinstance(raw, dict):
        return None
    if raw.get("Type", "container") != "container":
        return None
    action = raw.get("Action") or raw.get("status")
    actor = raw.get("Actor") or {}
    container_id = actor.get("ID") or raw.get("id")
    if not isinstance(action, str) or not action or not container_id:
        return None
    name = (actor.get("Attributes") or {}).get("name") or str(container_id)[:12]
    return ContainerEvent(action=action, container_id=str(container_id), name=name)
