import importlib.util

import pytest
from conftest import ROOT


@pytest.fixture
def script():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", ROOT / "scripts" / "bootstrap_admin.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestBootstrapAdmin:
    @pytest.mark.parametrize(
        "password,ok",
        [("short1!", False), ("alllowercaseletters", False), ("Longer-Password-1", True)],
    )
    def test_password_policy(self, script, password, ok):
        assert script.validate_password(password) is ok

    def test_creates_admin(self, script):
        result = script.bootstrap_admin("ops", "Longer-Password-1")
        assert result["status"] == "created"
        assert result["user_id"]

    def test_dry_run_changes_nothing(self, script):
        result = script.bootstrap_admin("ops", "Longer-Password-1", dry_run=True)
        assert result == {"user_id": None, "username": "ops", "status": "dry_run"}

    def test_main_requires_username(self, script, monkeypatch):
        monkeypatch.delenv("ADMIN_USERNAME", raising=False)
        monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
        monkeypatch.setattr("sys.argv", ["bootstrap_admin.py"])
        with pytest.raises(SystemExit) as exc:
            script.main()
        assert exc.value.code == 1
