# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating mailmirror configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/mailmirror/  (default: ~/.config/mailmirror/)
#   - Data:    $XDG_DATA_HOME/mailmirror/    (default: ~/.local/share/mailmirror/)
#   - Cache:   $XDG_CACHE_HOME/mailmirror/   (default: ~/.cache/mailmirror/)
#   - State:   $XDG_STATE_HOME/mailmirror/   (default: ~/.local/state/mailmirror/)
#
# Files:
#   - config.toml: User configuration (accounts, sync tuning)
#   - mailmirror.db: SQLite mirror of headers and bodies (in data directory)
#
# Credentials never live in config.toml. Passwords and OAuth2 tokens are
# kept in the system keyring under the service "mailmirror:<account id>".
# =============================================================================

import logging
import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any

import keyring
import tomli_w  # For writing TOML (tomllib is read-only)

from mailmirror.core import Account


logger = logging.getLogger(__name__)


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths
APP_NAME = "mailmirror"


def _xdg_dir(env_var: str, fallback: Path) -> Path:
    value = os.environ.get(env_var)
    base = Path(value) if value else fallback
    return base / APP_NAME


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for mailmirror.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/mailmirror/
    """
    return _xdg_dir("XDG_CONFIG_HOME", Path.home() / ".config")


def get_xdg_data_home() -> Path:
    """
    Returns the XDG data directory for mailmirror.

    Respects $XDG_DATA_HOME if set, otherwise uses ~/.local/share/mailmirror/
    This is where the SQLite mirror lives.
    """
    return _xdg_dir("XDG_DATA_HOME", Path.home() / ".local" / "share")


def get_xdg_cache_home() -> Path:
    """
    Returns the XDG cache directory for mailmirror.

    Cache can be safely deleted without data loss.
    """
    return _xdg_dir("XDG_CACHE_HOME", Path.home() / ".cache")


def get_xdg_state_home() -> Path:
    """Returns the XDG state directory for mailmirror."""
    return _xdg_dir("XDG_STATE_HOME", Path.home() / ".local" / "state")


def ensure_directories() -> dict[str, Path]:
    """
    Creates all required XDG directories if they don't exist.

    Returns:
        Dictionary mapping directory type to path.
    """
    dirs = {
        "config": get_xdg_config_home(),
        "data": get_xdg_data_home(),
        "cache": get_xdg_cache_home(),
        "state": get_xdg_state_home(),
    }

    for dir_path in dirs.values():
        dir_path.mkdir(parents=True, exist_ok=True)

    return dirs


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class CacheConfig:
    """
    Configuration for the in-memory body cache and local retention.

    Attributes:
        limit_mb: Upper bound of the shared EmailCache (0 = unlimited).
        local_cache_duration_months: Only cache bodies of messages newer
                                     than this many months (0 = no cutoff).
    """
    limit_mb: int = 128
    local_cache_duration_months: int = 0


@dataclass
class PipelineConfig:
    """
    Configuration for background content caching.

    Attributes:
        active_concurrency: Workers for the account the user is looking at.
        background_concurrency: Workers for every other account.
        stagger_seconds: Delay between starting consecutive workers.
        pace_seconds: Pause between fetches of a single worker.
        page_delay_seconds: Pause between header pages.
        retry_initial_seconds: First backoff delay after a failed pass.
        retry_max_seconds: Backoff cap.
    """
    active_concurrency: int = 3
    background_concurrency: int = 1
    stagger_seconds: float = 0.5
    pace_seconds: float = 0.2
    page_delay_seconds: float = 1.0
    retry_initial_seconds: float = 3.0
    retry_max_seconds: float = 120.0


@dataclass
class IndexConfig:
    """
    Configuration for the sparse mailbox index.

    Attributes:
        page_size: Headers per page requested from the server.
        skipped_retry_seconds: Delay before re-requesting unparseable UIDs.
    """
    page_size: int = 50
    skipped_retry_seconds: float = 5.0


@dataclass
class ConnectivityConfig:
    """
    Configuration for the online/offline monitor.

    Attributes:
        probe_host: Host the TCP probe connects to.
        probe_port: Port the TCP probe connects to.
        interval_seconds: Time between probes.
        timeout_seconds: Connect timeout for one probe.
    """
    probe_host: str = "1.1.1.1"
    probe_port: int = 53
    interval_seconds: float = 15.0
    timeout_seconds: float = 3.0


@dataclass
class Config:
    """
    Main configuration container for mailmirror.

    Attributes:
        default_account: Id of the account to activate on startup.
        hidden_accounts: Account ids excluded from background sync.
        accounts: Configured accounts, keyed by account id.
        cache: Body cache configuration.
        pipeline: Content caching configuration.
        index: Header index configuration.
        connectivity: Online monitor configuration.

    Usage:
        >>> config = Config.load()
        >>> config.accounts["personal"].email
        'user@example.com'
    """
    default_account: str = ""
    hidden_accounts: list[str] = field(default_factory=list)

    # Account configurations (id -> Account)
    accounts: dict[str, Account] = field(default_factory=dict)

    # Subsystem configurations
    cache: CacheConfig = field(default_factory=CacheConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    connectivity: ConnectivityConfig = field(default_factory=ConnectivityConfig)

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    @staticmethod
    def database_path() -> Path:
        """Returns the path to the SQLite database."""
        return get_xdg_data_home() / "mailmirror.db"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load configuration from the config file.

        If the config file doesn't exist, returns default configuration.

        Args:
            path: Config file to read. Defaults to the XDG location.

        Raises:
            ConfigError: If the config file exists but is invalid.
        """
        config_path = path or cls.config_file_path()

        if not config_path.exists():
            return cls()

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """Save configuration to the config file."""
        config_path = path or self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from a dictionary (parsed TOML).

        Unknown keys are ignored; wrong types raise ConfigError.
        """
        config = cls()

        general = data.get("general", {})
        config.default_account = general.get("default_account", "")
        config.hidden_accounts = list(general.get("hidden_accounts", []))

        try:
            config.cache = _section(CacheConfig, data.get("cache", {}))
            config.pipeline = _section(PipelineConfig, data.get("pipeline", {}))
            config.index = _section(IndexConfig, data.get("index", {}))
            config.connectivity = _section(ConnectivityConfig, data.get("connectivity", {}))
        except TypeError as e:
            raise ConfigError(f"Invalid config value: {e}") from e

        if config.pipeline.active_concurrency < 1 or config.pipeline.background_concurrency < 1:
            raise ConfigError("Pipeline concurrency must be at least 1")
        if config.index.page_size < 1:
            raise ConfigError("Index page_size must be at least 1")

        # Accounts - each key under [accounts] is an account id
        for account_id, acct_data in data.get("accounts", {}).items():
            if "password" in acct_data:
                logger.warning(f"Ignoring password for {account_id} in config; use the keyring")
            expires_at = acct_data.get("oauth2_expires_at")
            if isinstance(expires_at, str):
                expires_at = datetime.fromisoformat(expires_at)
            config.accounts[account_id] = Account(
                id=account_id,
                email=acct_data.get("email", ""),
                display_name=acct_data.get("display_name", ""),
                imap_host=acct_data.get("imap_host", ""),
                imap_port=acct_data.get("imap_port", 993),
                imap_security=acct_data.get("imap_security", "ssl"),
                auth_type=acct_data.get("auth_type", "password"),
                oauth2_expires_at=expires_at,
                enabled=acct_data.get("enabled", True),
            )

        return config

    def _to_dict(self) -> dict[str, Any]:
        """Convert Config to a dictionary for TOML serialization."""
        data: dict[str, Any] = {
            "general": {
                "default_account": self.default_account,
                "hidden_accounts": list(self.hidden_accounts),
            },
            "cache": vars(self.cache).copy(),
            "pipeline": vars(self.pipeline).copy(),
            "index": vars(self.index).copy(),
            "connectivity": vars(self.connectivity).copy(),
            "accounts": {},
        }

        for account_id, account in self.accounts.items():
            entry = {
                "email": account.email,
                "display_name": account.display_name,
                "imap_host": account.imap_host,
                "imap_port": account.imap_port,
                "imap_security": account.imap_security,
                "auth_type": account.auth_type,
                "enabled": account.enabled,
            }
            if account.oauth2_expires_at:
                entry["oauth2_expires_at"] = account.oauth2_expires_at.isoformat()
            data["accounts"][account_id] = entry

        return data

    def enabled_accounts(self) -> list[Account]:
        return [a for a in self.accounts.values() if a.enabled]


def _section(cls, values: dict[str, Any]):
    """Build a section dataclass from a TOML table, ignoring unknown keys."""
    known = {k: v for k, v in values.items() if k in cls.__dataclass_fields__}
    section = cls(**known)
    for name, f in cls.__dataclass_fields__.items():
        value = getattr(section, name)
        expected = type(f.default)
        if expected is float and isinstance(value, int):
            setattr(section, name, float(value))
        elif not isinstance(value, expected):
            raise TypeError(f"{cls.__name__}.{name} must be {expected.__name__}, got {value!r}")
    return section


# =============================================================================
# Credentials
# =============================================================================

def load_credentials(account: Account) -> Account:
    """
    Return a copy of the account with its secrets filled in from the keyring.

    Password accounts read the password stored for the account's email.
    OAuth2 accounts read "<email>:access_token" and "<email>:refresh_token".
    """
    service = account.keyring_service
    if account.is_oauth2:
        return replace(
            account,
            oauth2_access_token=keyring.get_password(service, f"{account.email}:access_token") or "",
            oauth2_refresh_token=keyring.get_password(service, f"{account.email}:refresh_token") or "",
        )
    return replace(account, password=keyring.get_password(service, account.email) or "")


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths() -> None:
    """
    Print all XDG paths for debugging.
    Useful for users wondering where their config/data is stored.
    """
    print(f"Config:  {get_xdg_config_home()}")
    print(f"Data:    {get_xdg_data_home()}")
    print(f"Cache:   {get_xdg_cache_home()}")
    print(f"State:   {get_xdg_state_home()}")
    print()
    print(f"Config file:  {Config.config_file_path()}")
    print(f"Database:     {Config.database_path()}")
