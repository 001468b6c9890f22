from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Routing
    docker_network: str = os.getenv("NAC_DOCKER_NETWORK", "app-network")
    listen_port: int = _env_int("NAC_LISTEN_PORT", 80)
    path_prefix: str = os.getenv("NAC_PATH_PREFIX", "")
    address_mode: str = os.getenv("NAC_ADDRESS_MODE", "ip")  # ip|name
    proxy_timeout_s: int = _env_int("NAC_PROXY_TIMEOUT_S", 60)

    # Generated files
    conf_dir: str = os.getenv("NAC_CONF_DIR", "/etc/nginx/conf.d/auto-generated")
    staging_dir: str = os.getenv("NAC_STAGING_DIR", "/var/lib/nac/staging")
    upstreams_file: str = "upstreams.conf"
    servers_file: str = "servers.conf"
    test_conf_file: str = "nginx.test.conf"

    # Timing
    settle_delay_s: float = _env_float("NAC_SETTLE_DELAY_S", 2.0)
    inspect_timeout_s: int = _env_int("NAC_INSPECT_TIMEOUT_S", 10)
    validate_timeout_s: int = _env_int("NAC_VALIDATE_TIMEOUT_S", 15)

    # Proxy process control
    nginx_bin: str = os.getenv("NAC_NGINX_BIN", "nginx")
    # When set, nginx commands run through `docker exec <container>`.
    nginx_container: str = os.getenv("NAC_NGINX_CONTAINER", "")
    reload_cmd: str = os.getenv("NAC_RELOAD_CMD", "")

    # Process
    lock_file: str = os.getenv("NAC_LOCK_FILE", "/run/nac.lock")
    db_path: str = os.getenv("NAC_DB_PATH", "nac.db")
    log_level: str = os.getenv("NAC_LOG_LEVEL", "INFO")
    log_file: str = os.getenv("NAC_LOG_FILE", "")

    # Status API (port 0 disables it)
    status_host: str = os.getenv("NAC_STATUS_HOST", "127.0.0.1")
    status_port: int = _env_int("NAC_STATUS_PORT", 8089)
    proxy_health_url: str = os.getenv("NAC_PROXY_HEALTH_URL", "http://localhost/health")


settings = Settings()
