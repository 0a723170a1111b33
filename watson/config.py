"""Configuration management for Watson Sync."""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

from platformdirs import user_config_dir, user_data_dir, user_log_dir

__all__ = [
    "Config",
    "SyncSettings",
    "TokenSettings",
    "GoogleSettings",
    "ICloudSettings",
    "setup_logging",
    "MIN_SYNC_INTERVAL",
]

logger = logging.getLogger(__name__)

APP_NAME = "watson"
APP_AUTHOR = "skxxtz"

# Provider endpoints
ICLOUD_CALDAV_URL = "https://caldav.icloud.com"
GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_URL = "https://www.googleapis.com/calendar/v3"

# Sync settings
DEFAULT_SYNC_INTERVAL = 900  # seconds
MIN_SYNC_INTERVAL = 60
DEFAULT_MAX_WORKERS = 4


@dataclass
class SyncSettings:
    """Sync scheduling configuration."""

    interval_seconds: int = DEFAULT_SYNC_INTERVAL
    max_workers: int = DEFAULT_MAX_WORKERS  # Caps simultaneous outbound connections
    full_resync_hours: int = 24
    window_past_days: int = 7
    window_future_days: int = 60
    backoff_base_seconds: float = 30.0
    backoff_max_seconds: float = 1800.0
    shutdown_grace_seconds: float = 5.0
    request_timeout: int = 30


@dataclass
class TokenSettings:
    """OAuth token renewal configuration."""

    refresh_margin_seconds: int = 300
    check_interval_seconds: int = 60


@dataclass
class GoogleSettings:
    """Google OAuth client configuration."""

    client_id: str = ""
    client_secret: str = ""
    scopes: list[str] = field(
        default_factory=lambda: [
            "openid",
            "email",
            "https://www.googleapis.com/auth/calendar.readonly",
        ]
    )
    authorize_url: str = GOOGLE_AUTHORIZE_URL
    token_url: str = GOOGLE_TOKEN_URL
    api_url: str = GOOGLE_CALENDAR_API_URL

    def resolved(self) -> "GoogleSettings":
        """Return a copy with client credentials filled from the environment."""
        return GoogleSettings(
            client_id=os.getenv("WATSON_GOOGLE_CLIENT_ID") or self.client_id,
            client_secret=os.getenv("WATSON_GOOGLE_CLIENT_SECRET") or self.client_secret,
            scopes=list(self.scopes),
            authorize_url=self.authorize_url,
            token_url=self.token_url,
            api_url=self.api_url,
        )


@dataclass
class ICloudSettings:
    """iCloud CalDAV configuration."""

    caldav_url: str = ICLOUD_CALDAV_URL


@dataclass
class Config:
    """Main configuration object."""

    sync: SyncSettings = field(default_factory=SyncSettings)
    tokens: TokenSettings = field(default_factory=TokenSettings)
    google: GoogleSettings = field(default_factory=GoogleSettings)
    icloud: ICloudSettings = field(default_factory=ICloudSettings)
    data_dir: Optional[str] = None  # Overrides the platform data dir
    debug_mode: bool = False

    @classmethod
    def get_config_dir(cls) -> Path:
        """Get the configuration directory path."""
        return Path(user_config_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_data_dir(cls) -> Path:
        """Get the platform data directory (key file, credentials, sync state)."""
        return Path(user_data_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_log_dir(cls) -> Path:
        """Get the log directory path."""
        return Path(user_log_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_config_file(cls) -> Path:
        """Get the config file path."""
        return cls.get_config_dir() / "config.json"

    def resolve_data_dir(self) -> Path:
        """Data dir honoring the ``data_dir`` override."""
        if self.data_dir:
            return Path(self.data_dir).expanduser()
        return self.get_data_dir()

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Load config from file, or return defaults."""
        config_file = path or cls.get_config_file()
        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)
                return cls._from_dict(data)
            except Exception as e:
                logger.warning(f"Failed to load config: {e}, using defaults")
        return cls()

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary."""
        sync_data = data.pop("sync", {})
        token_data = data.pop("tokens", {})
        google_data = data.pop("google", {})
        icloud_data = data.pop("icloud", {})

        sync = SyncSettings(**sync_data) if sync_data else SyncSettings()
        # Guard against hammering providers with a tiny interval
        sync.interval_seconds = max(MIN_SYNC_INTERVAL, sync.interval_seconds)
        sync.max_workers = max(1, sync.max_workers)

        return cls(
            sync=sync,
            tokens=TokenSettings(**token_data) if token_data else TokenSettings(),
            google=GoogleSettings(**google_data) if google_data else GoogleSettings(),
            icloud=ICloudSettings(**icloud_data) if icloud_data else ICloudSettings(),
            **{k: v for k, v in data.items() if k in cls.__dataclass_fields__},
        )

    def save(self, path: Optional[Path] = None) -> None:
        """Save config to file.

        The Google client secret is written as-is; keep it in the
        environment instead if the config dir is shared.
        """
        config_file = path or self.get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)

        data = asdict(self)
        with open(config_file, "w") as f:
            json.dump(data, f, indent=2)
        logger.info(f"Config saved to {config_file}")


def setup_logging(debug: bool = False) -> None:
    """Configure logging."""
    log_dir = Config.get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "watson-sync.log"

    level = logging.DEBUG if debug else logging.INFO
    format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
