import os
import sys

import pytest

# Ensure project root is importable (so `import main` / `import cli` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from nac import db  # noqa: E402
from nac.settings import Settings  # noqa: E402


@pytest.fixture(autouse=True)
def journal(tmp_path, monkeypatch):
    """Isolated sqlite journal per test."""
    monkeypatch.setattr(db, "DB_PATH", str(tmp_path / "journal.db"))
    db.init_db()
    yield


@pytest.fixture
def settings(tmp_path):
    return Settings(
        docker_network="app-network",
        conf_dir=str(tmp_path / "live"),
        staging_dir=str(tmp_path / "staging"),
        lock_file=str(tmp_path / "nac.lock"),
        settle_delay_s=0.5,
        path_prefix="",
        address_mode="ip",
        listen_port=80,
        proxy_timeout_s=60,
        nginx_container="",
        reload_cmd="",
        status_port=0,
    )
