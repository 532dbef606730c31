import os
import tempfile

import pytest

_BOOTSTRAP_DIR = tempfile.mkdtemp(prefix="zephsole-tests-")
os.environ["DATA_DIR"] = _BOOTSTRAP_DIR
os.environ["DB_PATH"] = os.path.join(_BOOTSTRAP_DIR, "bootstrap.db")
os.environ["FAL_MAINTENANCE_AUTOSTART"] = "false"

from zephsole import auth, config, fal_manager  # noqa: E402
from zephsole.database import db_conn, init_db  # noqa: E402

FAL_ENV_VARS = ("FAL_KEY", "FAL_KEY_ID", "FAL_KEY_ALPHA")


@pytest.fixture(autouse=True)
def db(tmp_path, monkeypatch):
    db_path = tmp_path / "zephsole.db"
    monkeypatch.setattr(config, "DB_PATH", db_path)
    for var in FAL_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    init_db()
    fal_manager.key_runtime_state.clear()
    yield db_path
    fal_manager.key_runtime_state.clear()


@pytest.fixture
def con(db):
    connection = db_conn()
    yield connection
    connection.close()


@pytest.fixture
def make_user(con):
    def _make(email="ada@example.com", name="Ada", password="secret123", role="user"):
        return auth.create_user(con, email, name=name, password=password, role=role)

    return _make


@pytest.fixture
def backdate(con):
    """Move a fal_key_load row's last update into the past."""

    def _backdate(key_name, age_ms):
        con.execute(
            "UPDATE fal_key_load SET last_updated_ms = last_updated_ms - ? WHERE key_name = ?",
            (age_ms, key_name),
        )
        con.commit()

    return _backdate
