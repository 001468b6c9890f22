import hashlib
import os
from dataclasses import replace

import pytest

from nac import reloader
from nac.nginx_conf import generate
from nac.routes import ContainerRoute

from fakes import FakeNginx

GOOD = [ContainerRoute(name="api", address="172.18.0.5", port=8080, path="/api")]
BAD = GOOD + [ContainerRoute(name="broken", address="bad_address", port=80, path="/broken")]


def _live_hash(settings):
    h = hashlib.sha256()
    for fname in (settings.upstreams_file, settings.servers_file):
        with open(os.path.join(settings.conf_dir, fname), "rb") as f:
            h.update(f.read())
    return h.hexdigest()


def test_promote_installs_and_reloads(settings):
    nginx = FakeNginx()
    staged = generate(GOOD, settings)
    res = reloader.promote(staged, settings, runner=nginx)
    assert res.outcome == "promoted"
    assert res.reloaded is True
    with open(os.path.join(settings.conf_dir, "upstreams.conf"), encoding="utf-8") as f:
        assert "server 172.18.0.5:8080;" in f.read()
    assert nginx.tests[0] == ["nginx", "-t", "-c", staged.test_conf_path]
    assert nginx.reloads == [["nginx", "-s", "reload"]]
    assert not os.path.exists(staged.upstreams_path)


def test_invalid_candidate_leaves_live_config_untouched(settings):
    nginx = FakeNginx()
    reloader.promote(generate(GOOD, settings), settings, runner=nginx)
    before = _live_hash(settings)

    staged = generate(BAD, settings)
    res = reloader.promote(staged, settings, runner=nginx)

    assert res.outcome == "invalid"
    assert res.blamed == "broken"
    assert "host not found" in res.validation_output
    assert _live_hash(settings) == before
    assert len(nginx.reloads) == 1
    for path in (staged.upstreams_path, staged.servers_path, staged.test_conf_path):
        assert not os.path.exists(path)


def test_unchanged_candidate_skips_validation_and_reload(settings):
    nginx = FakeNginx()
    reloader.promote(generate(GOOD, settings), settings, runner=nginx)
    nginx.calls.clear()

    res = reloader.promote(generate(GOOD, settings), settings, runner=nginx)
    assert res.outcome == "unchanged"
    assert nginx.calls == []


def test_unchanged_candidate_retries_reload_when_forced(settings):
    nginx = FakeNginx()
    reloader.promote(generate(GOOD, settings), settings, runner=nginx)
    res = reloader.promote(generate(GOOD, settings), settings, force_reload=True, runner=nginx)
    assert res.outcome == "unchanged"
    assert res.reloaded is True
    assert len(nginx.reloads) == 2


def test_reload_failure_keeps_promoted_files(settings):
    nginx = FakeNginx(reload_ok=False)
    res = reloader.promote(generate(GOOD, settings), settings, runner=nginx)
    assert res.outcome == "promoted"
    assert res.reloaded is False
    assert "invalid PID" in res.reload_error
    assert os.path.exists(os.path.join(settings.conf_dir, "servers.conf"))


def test_validator_timeout_counts_as_invalid(settings):
    res = reloader.promote(generate(GOOD, settings), settings, runner=FakeNginx(timeout=True))
    assert res.outcome == "invalid"
    assert "timed out" in res.validation_output
    assert not os.path.exists(os.path.join(settings.conf_dir, "upstreams.conf"))


def test_missing_nginx_binary_counts_as_invalid(settings):
    def runner(cmd, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", cmd[0])

    res = reloader.promote(generate(GOOD, settings), settings, runner=runner)
    assert res.outcome == "invalid"
    assert "could not run 'nginx'" in res.validation_output


def test_docker_exec_and_custom_reload_commands(settings):
    nginx = FakeNginx()
    in_container = replace(settings, nginx_container="nginx", reload_cmd="systemctl reload nginx")
    staged = generate(GOOD, in_container)
    reloader.promote(staged, in_container, runner=nginx)
    assert nginx.tests[0][:4] == ["docker", "exec", "nginx", "nginx"]
    assert nginx.calls[-1] == ["systemctl", "reload", "nginx"]


def test_phases_follow_the_pass_state_machine(settings):
    phases = []
    reloader.promote(generate(GOOD, settings), settings, runner=FakeNginx(), on_phase=phases.append)
    assert phases == ["validating", "promoting", "reloading"]

    phases.clear()
    reloader.promote(generate(BAD, settings), settings, runner=FakeNginx(), on_phase=phases.append)
    assert phases == ["validating", "discarding"]


def test_blame_without_location_returns_none(settings):
    staged = generate(GOOD, settings)
    assert reloader.blame("nginx: [emerg] unexpected end of file", staged) is None


def test_failed_write_leaves_live_pair_untouched(settings):
    nginx = FakeNginx()
    web = ContainerRoute(name="web", address="172.18.0.6", port=3000, path="/web")
    reloader.promote(generate(GOOD + [web], settings), settings, runner=nginx)
    before = _live_hash(settings)

    blocker = os.path.join(settings.conf_dir, "servers.conf.tmp")
    os.mkdir(blocker)
    with pytest.raises(OSError):
        reloader.promote(generate(GOOD, settings), settings, runner=nginx)

    assert _live_hash(settings) == before
    assert not os.path.exists(os.path.join(settings.conf_dir, "upstreams.conf.tmp"))
    assert os.path.isdir(blocker)
