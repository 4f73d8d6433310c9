"""Settings loading, logging setup and the single-instance lock."""

import logging
import os
import stat

import pytest

from vanishbridge.config import BridgeSettings, LogSettings, load_settings, save_settings
from vanishbridge.runtime import (
    acquire_instance_lock,
    configure_logging,
    read_pid,
    release_instance_lock,
)


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("VANISHBRIDGE_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("VANISHBRIDGE_TELEGRAM_BOT_TOKEN", raising=False)
    (tmp_path / "home").mkdir(parents=True, exist_ok=True)
    return tmp_path / "home"


class TestSettings:

    def test_defaults_when_missing(self, home):
        settings = load_settings()
        assert settings.limits.max_linked_accounts_per_owner == 3
        assert settings.bot.passkey_length == 8
        assert settings.links_file == home / "data" / "users.json"
        assert settings.pid_file == home / "bridge.pid"

    def test_load_from_yaml(self, home):
        (home / "config.yaml").write_text(
            "telegram:\n"
            "  bot_token: '1:abc'\n"
            "  admin_id: '99'\n"
            "limits:\n"
            "  max_linked_accounts_per_owner: 5\n"
            "green_api:\n"
            "  instances:\n"
            "    '+15550000001':\n"
            "      instance_id: '1101'\n"
            "      api_token: 'tok'\n"
        )
        settings = load_settings()
        assert settings.bot_token == "1:abc"
        assert settings.telegram.admin_id == "99"
        assert settings.limits.max_linked_accounts_per_owner == 5
        assert settings.green_api.instances["+15550000001"].api_token == "tok"

    def test_env_token_overrides(self, home, monkeypatch):
        monkeypatch.setenv("VANISHBRIDGE_TELEGRAM_BOT_TOKEN", "2:env")
        assert load_settings().bot_token == "2:env"

    def test_save_is_private_and_round_trips(self, home):
        settings = BridgeSettings()
        settings.telegram.bot_token = "3:saved"
        path = save_settings(settings)

        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        assert load_settings(path).telegram.bot_token == "3:saved"


class TestLogging:

    def test_file_handler_created(self, tmp_path):
        settings = BridgeSettings(logs=LogSettings(path=str(tmp_path / "logs"), level="DEBUG"))
        log_file = configure_logging(settings)

        logging.getLogger("vanishbridge.test").info("hello log")
        for handler in logging.getLogger("vanishbridge").handlers:
            handler.flush()

        assert log_file == tmp_path / "logs" / "bridge.log"
        assert "hello log" in log_file.read_text()

    def test_file_logging_disabled(self, tmp_path):
        settings = BridgeSettings(logs=LogSettings(enabled=False, path=str(tmp_path / "logs")))
        assert configure_logging(settings) is None
        assert not (tmp_path / "logs").exists()


class TestInstanceLock:

    def test_acquire_and_release(self, tmp_path):
        pid_file = tmp_path / "bridge.pid"
        acquire_instance_lock(pid_file)

        assert pid_file.read_text() == str(os.getpid())
        assert read_pid(pid_file) == os.getpid()
        release_instance_lock(pid_file)
        assert not pid_file.exists()

    def test_stale_pid_file_is_replaced(self, tmp_path, monkeypatch):
        pid_file = tmp_path / "bridge.pid"
        pid_file.write_text("999999")
        monkeypatch.setattr("vanishbridge.runtime._pid_alive", lambda pid: pid == os.getpid())

        assert read_pid(pid_file) is None
        acquire_instance_lock(pid_file)
        assert pid_file.read_text() == str(os.getpid())

    def test_release_leaves_foreign_pid_file(self, tmp_path):
        pid_file = tmp_path / "bridge.pid"
        pid_file.write_text("12345")
        release_instance_lock(pid_file)
        assert pid_file.exists()

    def test_garbage_pid_file(self, tmp_path):
        pid_file = tmp_path / "bridge.pid"
        pid_file.write_text("not a pid")
        assert read_pid(pid_file) is None
