from __future__ import annotations

import os
import re
import shlex
import subprocess
from dataclasses import dataclass
from typing import Callable

from .nginx_conf import ROUTE_MARKER, StagedConfig
from .settings import Settings

Runner = Callable[..., subprocess.CompletedProcess]

NGINX_ERROR_LOCATION_RE = re.compile(r" in (\S+):(\d+)")


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    output: str


@dataclass(frozen=True)
class PromoteResult:
    outcome: str  # promoted|unchanged|invalid
    reloaded: bool = False
    reload_error: str | None = None
    validation_output: str = ""
    blamed: str | None = None


def nginx_command(settings: Settings) -> list[str]:
    if settings.nginx_container:
        return ["docker", "exec", settings.nginx_container, "nginx"]
    return [settings.nginx_bin]


def live_path(settings: Settings, staged_path: str) -> str:
    return os.path.join(settings.conf_dir, os.path.basename(staged_path))


def _read(path: str) -> str | None:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except FileNotFoundError:
        return None


def is_unchanged(staged: StagedConfig, settings: Settings) -> bool:
    return all(_read(live_path(settings, p)) == content for p, content in staged.files)


def _run(cmd: list[str], timeout: int, runner: Runner) -> tuple[bool, str]:
    try:
        proc = runner(cmd, capture_output=True, text=True, timeout=timeout, check=False)
    except subprocess.TimeoutExpired:
        return False, f"'{' '.join(cmd)}' timed out after {timeout}s"
    except OSError as e:
        return False, f"could not run '{cmd[0]}': {e}"
    output = "\n".join(s.strip() for s in (proc.stdout, proc.stderr) if s and s.strip())
    return proc.returncode == 0, output


def validate(test_conf_path: str, settings: Settings, runner: Runner = subprocess.run) -> ValidationResult:
    """`nginx -t` against the staged wrapper config."""
    ok, output = _run(nginx_command(settings) + ["-t", "-c", test_conf_path], settings.validate_timeout_s, runner)
    return ValidationResult(ok=ok, output=output)


def validate_live(settings: Settings, runner: Runner = subprocess.run) -> ValidationResult:
    """`nginx -t` against the proxy's own top-level configuration."""
    ok, output = _run(nginx_command(settings) + ["-t"], settings.validate_timeout_s, runner)
    return ValidationResult(ok=ok, output=output)


def blame(output: str, staged: StagedConfig) -> str | None:
    """Name the container whose rendered block contains the line nginx complained about."""
    contents = dict(staged.files)
    for path, line_no in NGINX_ERROR_LOCATION_RE.findall(output):
        content = contents.get(path)
        if content is None:
            continue
        lines = content.splitlines()[: int(line_no)]
        for line in reversed(lines):
            stripped = line.strip()
            if stripped.startswith(ROUTE_MARKER):
                return stripped[len(ROUTE_MARKER):]
    return None


def discard(staged: StagedConfig) -> None:
    for path in (staged.upstreams_path, staged.servers_path, staged.test_conf_path):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


def install(staged: StagedConfig, settings: Settings) -> None:
    """Move the staged texts into the live directory.

    Every temp file is written and synced before the first rename, so a failed
    write leaves the whole live pair as it was.
    """
    os.makedirs(settings.conf_dir, exist_ok=True)
    pending: list[tuple[str, str]] = []
    try:
        for path, content in staged.files:
            live = live_path(settings, path)
            tmp = f"{live}.tmp"
            pending.append((tmp, live))
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
    except OSError:
        for tmp, _ in pending:
            if os.path.isfile(tmp):
                os.remove(tmp)
        raise
    for tmp, live in pending:
        os.replace(tmp, live)


def reload_proxy(settings: Settings, runner: Runner = subprocess.run) -> tuple[bool, str | None]:
    """Ask the proxy for a graceful reload. Returns (ok, error)."""
    if settings.reload_cmd:
        cmd = shlex.split(settings.reload_cmd)
    else:
        cmd = nginx_command(settings) + ["-s", "reload"]
    ok, output = _run(cmd, settings.validate_timeout_s, runner)
    return ok, None if ok else (output or f"'{' '.join(cmd)}' failed")


def promote(
    staged: StagedConfig,
    settings: Settings,
    force_reload: bool = False,
    runner: Runner = subprocess.run,
    on_phase: Callable[[str], None] | None = None,
) -> PromoteResult:
    """Make a staged configuration live if (and only if) nginx accepts it.

    An invalid candidate is discarded and the live files stay as they were. A
    failed reload does not roll the promoted files back.
    """
    phase = on_phase or (lambda _p: None)

    if is_unchanged(staged, settings):
        phase("discarding")
        discard(staged)
        if not force_reload:
            return PromoteResult(outcome="unchanged")
        phase("reloading")
        ok, err = reload_proxy(settings, runner)
        return PromoteResult(outcome="unchanged", reloaded=ok, reload_error=err)

    phase("validating")
    result = validate(staged.test_conf_path, settings, runner)
    if not result.ok:
        culprit = blame(result.output, staged)
        phase("discarding")
        discard(staged)
        return PromoteResult(outcome="invalid", validation_output=result.output, blamed=culprit)

    phase("promoting")
    install(staged, settings)
    discard(staged)

    phase("reloading")
    ok, err = reload_proxy(settings, runner)
    return PromoteResult(
        outcome="promoted",
        reloaded=ok,
        reload_error=err,
        validation_output=result.output,
    )
