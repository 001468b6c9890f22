"""Routing metadata: typed container facts and the label-driven route extractor."""
from __future__ import annotations

import re
from dataclasses import dataclass, field

LABEL_ENABLE = "nginx.enable"
LABEL_PATH = "nginx.path"
LABEL_HOST = "nginx.host"
LABEL_PORT = "nginx.port"

# `docker inspect --format '{{index .Config.Labels "x"}}'` prints this for a missing label.
NO_VALUE = "<no value>"

CONTAINER_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]*$")
PATH_RE = re.compile(r"^[A-Za-z0-9._~/\-]+$")
HOST_RE = re.compile(r"^(\*\.)?[A-Za-z0-9](?:[A-Za-z0-9\-.]*[A-Za-z0-9])?$")


class LabelError(ValueError):
    """A routing label (or the container name) cannot be used in a proxy config."""


@dataclass(frozen=True)
class ContainerInfo:
    """Everything the extractor needs, read from a single inspect call."""

    id: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    networks: dict[str, str] = field(default_factory=dict)  # network -> IP ("" if unassigned)
    exposed_ports: tuple[int, ...] = ()
    running: bool = True

    def label(self, key: str) -> str | None:
        """Label value, or None when absent.

        The inspection placeholder for a missing label counts as absent.
        """
        raw = self.labels.get(key)
        if raw is None:
            return None
        value = raw.strip()
        if value == NO_VALUE:
            return None
        return value


@dataclass(frozen=True)
class ContainerRoute:
    name: str
    address: str
    port: int
    path: str
    host: str | None = None
    enabled: bool = True

    @property
    def upstream(self) -> str:
        return f"{self.name}_backend"


@dataclass(frozen=True)
class NotApplicable:
    reason: str


def normalize_path(path: str) -> str:
    """Leading slash, no duplicate slashes, no trailing slash ("/" stays "/")."""
    parts = [p for p in path.split("/") if p]
    return "/" + "/".join(parts)


def _parse_port(raw: str, source: str) -> int:
    try:
        port = int(raw)
    except ValueError:
        raise LabelError(f"{source} is not a number: {raw!r}") from None
    if not 1 <= port <= 65535:
        raise LabelError(f"{source} out of range: {port}")
    return port


def _parse_path(raw: str) -> str:
    if not PATH_RE.match(raw):
        raise LabelError(f"{LABEL_PATH} contains unsupported characters: {raw!r}")
    path = normalize_path(raw)
    if any(seg in {".", ".."} for seg in path.split("/")):
        raise LabelError(f"{LABEL_PATH} must not contain '.' or '..' segments: {raw!r}")
    return path


def _parse_host(raw: str) -> str:
    hosts = [h for h in re.split(r"[\s,]+", raw) if h]
    for h in hosts:
        if not HOST_RE.match(h):
            raise LabelError(f"{LABEL_HOST} is not a valid host name: {h!r}")
    return " ".join(hosts)


def extract_route(
    info: ContainerInfo,
    network: str,
    path_prefix: str = "",
    address_mode: str = "ip",
) -> ContainerRoute | NotApplicable:
    """Derive the route for one container, or say why it gets none.

    `path_prefix` is the shared external prefix; it is folded into the route path
    so the generated location strips both.

    Raises LabelError for label values that cannot be rendered safely.
    """
    if not CONTAINER_NAME_RE.match(info.name):
        raise LabelError(f"container name cannot be used as an upstream name: {info.name!r}")

    if network not in info.networks:
        return NotApplicable(f"not attached to network '{network}'")

    if address_mode == "name":
        address = info.name
    else:
        address = info.networks[network]
        if not address:
            return NotApplicable(f"no IP address on network '{network}' yet")

    enable = info.label(LABEL_ENABLE)
    if enable is not None and enable.lower() == "false":
        return NotApplicable(f"{LABEL_ENABLE}=false")

    raw_path = info.label(LABEL_PATH)
    path = _parse_path(raw_path) if raw_path else f"/{info.name}"

    raw_host = info.label(LABEL_HOST)
    host = _parse_host(raw_host) if raw_host else None

    raw_port = info.label(LABEL_PORT)
    if raw_port:
        port = _parse_port(raw_port, LABEL_PORT)
    elif info.exposed_ports:
        port = info.exposed_ports[0]
    else:
        return NotApplicable("no nginx.port label and no exposed port")

    if path_prefix:
        path = normalize_path(f"{_parse_path(path_prefix)}/{path}")

    return ContainerRoute(name=info.name, address=address, port=port, path=path, host=host)
