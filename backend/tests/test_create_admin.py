import importlib.util
from pathlib import Path

import pytest

pytestmark = pytest.mark.unit

from auth import verify_password
from storage import InMemoryStorage


def _load_script():
    path = Path(__file__).resolve().parent.parent / "scripts" / "create_admin.py"
    spec = importlib.util.spec_from_file_location("create_admin_script", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def script():
    return _load_script()


@pytest.mark.asyncio
async def test_create_admin_hashes_password(script, monkeypatch):
    storage = InMemoryStorage()
    monkeypatch.setattr(script, "create_storage", lambda backend: storage)

    user = await script.create_admin("ops", "correct-horse", backend="memory")

    assert user.is_admin
    stored = await storage.get_user_by_username("ops")
    assert stored.password_hash != "correct-horse"
    assert verify_password("correct-horse", stored.password_hash)


def test_main_rejects_short_password(script, capsys):
    assert script.main(["--username", "ops", "--password", "short", "--backend", "memory"]) == 2
    assert "at least 8" in capsys.readouterr().err


def test_main_creates_user(script, capsys):
    assert script.main(["--username", "ops", "--password", "long-enough", "--backend", "memory"]) == 0
    assert "Created admin user ops" in capsys.readouterr().out
