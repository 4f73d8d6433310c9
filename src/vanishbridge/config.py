"""Bridge settings.

Settings live in ~/.vanishbridge/config.yaml (the directory can be moved
with VANISHBRIDGE_HOME). A missing file means defaults everywhere; the
Telegram token can also come from VANISHBRIDGE_TELEGRAM_BOT_TOKEN.

Example config.yaml:

    telegram:
      bot_token: "123456:ABC..."
      admin_id: "987654321"
    limits:
      max_linked_accounts_per_owner: 3
    green_api:
      instances:
        "+15551234567":
          instance_id: "1101000001"
          api_token: "d75b3a66374942c5b3c019c698abc2067e151558acbd412345"
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def get_home_dir() -> Path:
    """Get the VanishBridge home directory."""
    override = os.environ.get("VANISHBRIDGE_HOME")
    home = Path(override).expanduser() if override else Path.home() / ".vanishbridge"
    home.mkdir(parents=True, exist_ok=True)
    return home


def get_config_path() -> Path:
    return get_home_dir() / "config.yaml"


class TelegramSettings(BaseModel):
    bot_token: str = ""
    admin_id: str = ""


class LimitSettings(BaseModel):
    max_linked_accounts_per_owner: int = Field(default=3, ge=1)


class BotSettings(BaseModel):
    passkey_length: int = Field(default=8, ge=4, le=64)
    pagination_limit: int = Field(default=5, ge=1)


class StorageSettings(BaseModel):
    # Empty means "under the home directory"
    data_dir: str = ""
    archive_dir: str = ""
    credentials_dir: str = ""


class LogSettings(BaseModel):
    enabled: bool = True
    path: str = ""
    level: str = "INFO"


class GreenAPIInstance(BaseModel):
    instance_id: str
    api_token: str


class GreenAPISettings(BaseModel):
    api_url: str = "https://api.green-api.com"
    poll_interval: float = 2.0
    instances: dict[str, GreenAPIInstance] = Field(default_factory=dict)


class BridgeSettings(BaseModel):
    """All bridge settings, validated from config.yaml."""

    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    limits: LimitSettings = Field(default_factory=LimitSettings)
    bot: BotSettings = Field(default_factory=BotSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logs: LogSettings = Field(default_factory=LogSettings)
    green_api: GreenAPISettings = Field(default_factory=GreenAPISettings)

    def _resolve(self, configured: str, default_name: str) -> Path:
        if configured:
            return Path(configured).expanduser()
        return get_home_dir() / default_name

    @property
    def data_dir(self) -> Path:
        return self._resolve(self.storage.data_dir, "data")

    @property
    def links_file(self) -> Path:
        return self.data_dir / "users.json"

    @property
    def archive_dir(self) -> Path:
        return self._resolve(self.storage.archive_dir, "archive")

    @property
    def credentials_dir(self) -> Path:
        return self._resolve(self.storage.credentials_dir, "credentials")

    @property
    def log_dir(self) -> Path:
        return self._resolve(self.logs.path, "logs")

    @property
    def pid_file(self) -> Path:
        return get_home_dir() / "bridge.pid"

    @property
    def bot_token(self) -> str:
        return os.environ.get(
            "VANISHBRIDGE_TELEGRAM_BOT_TOKEN", "") or self.telegram.bot_token


def load_settings(path: Path | None = None) -> BridgeSettings:
    """Load settings from YAML, falling back to defaults."""
    config_path = path or get_config_path()
    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    return BridgeSettings.model_validate(data)


def save_settings(settings: BridgeSettings, path: Path | None = None) -> Path:
    """Write settings back to YAML. The file holds secrets, so it is 0600."""
    config_path = path or get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.dump(settings.model_dump(), f, default_flow_style=False)
    config_path.chmod(0o600)
    return config_path
