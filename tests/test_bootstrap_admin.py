import importlib.util
from pathlib import Path

import pytest

from tutorgate.service.errors import ValidationError
from tutorgate.service.runtime import get_runtime

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
_spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
bootstrap = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(bootstrap)


async def test_creates_admin_that_can_log_in():
    result = await bootstrap.bootstrap_admin("Root@Example.com", "Adm1n!pass")

    assert result["status"] == "created"
    runtime = get_runtime()
    user, _, tokens = await runtime.auth.login("root@example.com", "Adm1n!pass")
    assert user.role == "admin"
    assert user.email_verified is True
    assert runtime.auth.tokens.verify_access(tokens.access_token).role == "admin"


async def test_promotes_existing_user_and_revokes_sessions():
    runtime = get_runtime()
    user, _, _ = await runtime.auth.signup("teach@example.com", "Good@1234", role="teacher")

    result = await bootstrap.bootstrap_admin("teach@example.com", None)

    assert result == {"user_id": user.id, "email": "teach@example.com", "status": "promoted"}
    assert runtime.store.get_user(user.id).role == "admin"
    assert runtime.auth.list_sessions(user.id) == []
    again = await bootstrap.bootstrap_admin("teach@example.com", None)
    assert again["status"] == "already_admin"


async def test_dry_run_changes_nothing():
    result = await bootstrap.bootstrap_admin("new@example.com", "Adm1n!pass", dry_run=True)
    assert result["status"] == "dry_run"
    assert get_runtime().store.get_user_by_email("new@example.com") is None


async def test_weak_password_rejected():
    with pytest.raises(ValidationError):
        await bootstrap.bootstrap_admin("new@example.com", "weakpass")


async def test_new_admin_needs_password():
    with pytest.raises(ValueError):
        await bootstrap.bootstrap_admin("new@example.com", None)


def test_main_requires_email(monkeypatch, capsys):
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    assert bootstrap.main([]) == 1
    assert "ADMIN_EMAIL" in capsys.readouterr().out
