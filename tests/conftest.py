import os
import tempfile
from pathlib import Path

import pytest

_TMP = Path(tempfile.mkdtemp(prefix="afiliados-tests-"))
os.environ["DB_BACKEND"] = "sqlite"
os.environ["DB_PATH"] = str(_TMP / "bootstrap.db")
os.environ["RAW_UPLOAD_DIR"] = str(_TMP / "raw")
os.environ["CURRENCY_DIGITS_AS_CENTS"] = "false"
os.environ["SUPABASE_URL"] = ""
os.environ.pop("SQLITE_PATH", None)

import api_server  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402


@pytest.fixture
def store(tmp_path, monkeypatch):
    monkeypatch.setattr(api_server, "DB_PATH", tmp_path / "sales.db")
    monkeypatch.setattr(api_server, "RAW_UPLOAD_DIR", tmp_path / "raw")
    monkeypatch.setattr(api_server, "SUPABASE_URL", "")
    monkeypatch.setattr(api_server, "CURRENCY_DIGITS_AS_CENTS", False)
    api_server.init_api_tables()
    return tmp_path


@pytest.fixture
def client(store):
    return TestClient(api_server.app)
