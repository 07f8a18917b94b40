"""Runtime configuration loaded from KIRO_ACCOUNTS_* environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

ENV_PREFIX = "KIRO_ACCOUNTS_"

DEFAULT_SOCIAL_AUTH_ENDPOINT = "https://prod.us-east-1.auth.desktop.kiro.dev"
DEFAULT_WEB_PORTAL_ENDPOINT = "https://app.kiro.dev/service/KiroWebPortalService/operation"
DEFAULT_USAGE_ENDPOINT = "https://codewhisperer.us-east-1.amazonaws.com"


def _env(name: str) -> Optional[str]:
    raw = os.getenv(ENV_PREFIX + name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def _env_int(name: str, default: int) -> int:
    """Read an integer setting.

    >>> _env_int("NOT_SET_ANYWHERE", 42)
    42
    """
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = _env(name)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


def _default_data_dir() -> Path:
    return Path.home() / ".kiro-accounts"


def _default_ide_token_path() -> Path:
    return Path.home() / ".aws" / "sso" / "cache" / "kiro-auth-token.json"


@dataclass
class Settings:
    """All tunables in one place.

    >>> s = Settings(data_dir=Path("/tmp/kam"))
    >>> s.db_path
    PosixPath('/tmp/kam/accounts.db')
    >>> s.redirect_uri
    'kiro://kiro.kiroAgent/authenticate-success'
    """

    data_dir: Path = field(default_factory=_default_data_dir)
    db_path: Optional[Path] = None
    pending_login_timeout: int = 600
    refresh_grace_seconds: int = 300
    idc_max_wait: int = 600
    idc_poll_interval: int = 5
    export_redact: bool = False
    url_scheme: str = "kiro"
    callback_host: str = "kiro.kiroAgent"
    callback_path: str = "/authenticate-success"
    api_host: str = "127.0.0.1"
    api_port: int = 8765
    social_auth_endpoint: str = DEFAULT_SOCIAL_AUTH_ENDPOINT
    web_portal_endpoint: str = DEFAULT_WEB_PORTAL_ENDPOINT
    usage_endpoint: str = DEFAULT_USAGE_ENDPOINT
    idc_region: str = "us-east-1"
    ide_token_path: Path = field(default_factory=_default_ide_token_path)
    machine_id_override_path: Optional[Path] = None

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        if self.db_path is None:
            self.db_path = self.data_dir / "accounts.db"
        if self.machine_id_override_path is None:
            self.machine_id_override_path = self.data_dir / "machine-guid"

    @property
    def redirect_uri(self) -> str:
        return f"{self.url_scheme}://{self.callback_host}{self.callback_path}"

    @property
    def machine_id_backup_path(self) -> Path:
        return self.data_dir / "machine-guid-backup.json"

    @property
    def token_recovery_path(self) -> Path:
        return self.data_dir / ".token_recovery.json"

    @property
    def instance_file(self) -> Path:
        return self.data_dir / "instance.json"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the environment, falling back to defaults."""
        data_dir = _env("DATA_DIR")
        kwargs: dict = {}
        if data_dir:
            kwargs["data_dir"] = Path(data_dir).expanduser()
        db_path = _env("DB_PATH")
        if db_path:
            kwargs["db_path"] = Path(db_path).expanduser()
        ide_token = _env("IDE_TOKEN_PATH")
        if ide_token:
            kwargs["ide_token_path"] = Path(ide_token).expanduser()
        override = _env("MACHINE_ID_OVERRIDE_PATH")
        if override:
            kwargs["machine_id_override_path"] = Path(override).expanduser()

        for name, attr in (
            ("URL_SCHEME", "url_scheme"),
            ("CALLBACK_HOST", "callback_host"),
            ("CALLBACK_PATH", "callback_path"),
            ("API_HOST", "api_host"),
            ("SOCIAL_AUTH_ENDPOINT", "social_auth_endpoint"),
            ("WEB_PORTAL_ENDPOINT", "web_portal_endpoint"),
            ("USAGE_ENDPOINT", "usage_endpoint"),
            ("IDC_REGION", "idc_region"),
        ):
            value = _env(name)
            if value:
                kwargs[attr] = value

        kwargs["pending_login_timeout"] = _env_int("PENDING_LOGIN_TIMEOUT", 600)
        kwargs["refresh_grace_seconds"] = _env_int("REFRESH_GRACE_SECONDS", 300)
        kwargs["idc_max_wait"] = _env_int("IDC_MAX_WAIT", 600)
        kwargs["idc_poll_interval"] = _env_int("IDC_POLL_INTERVAL", 5)
        kwargs["api_port"] = _env_int("API_PORT", 8765)
        kwargs["export_redact"] = _env_bool("EXPORT_REDACT", False)
        return cls(**kwargs)
