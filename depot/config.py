"""
Configuration management for depot.

The configuration is stored as a TOML file in the data directory. It holds
the identity namespace, the admin escalation secret, and where uploaded
bytes go. Environment variables override the file.
"""

import os
import tomllib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# tomli_w for writing TOML (tomllib is read-only)
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore

from .identity import parse_namespace


CONFIG_FILENAME = "depot.toml"
CONFIG_VERSION = 1


def get_default_data_dir() -> Path:
    """Data directory: DEPOT_DATA_DIR, else ~/.depot."""
    env = os.environ.get("DEPOT_DATA_DIR")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".depot"


@dataclass
class DepotConfig:
    """Complete service configuration."""
    path: Path
    namespace: str = field(default_factory=lambda: str(uuid.uuid4()))
    admin_secret: str = ""
    backend: str = "local"
    uploads: Optional[Path] = None
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def uploads_dir(self) -> Path:
        """Directory for uploaded bytes (defaults to <data>/uploads)."""
        return self.uploads if self.uploads is not None else self.path / "uploads"

    @property
    def registry_path(self) -> Path:
        return self.path / "registry.db"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def apply_env_overrides(config: DepotConfig) -> DepotConfig:
    """Let DEPOT_NAMESPACE, DEPOT_ADMIN_SECRET and DEPOT_STORAGE_DIR win over the file."""
    namespace = os.environ.get("DEPOT_NAMESPACE")
    if namespace:
        config.namespace = namespace
    secret = os.environ.get("DEPOT_ADMIN_SECRET")
    if secret is not None:
        config.admin_secret = secret
    storage = os.environ.get("DEPOT_STORAGE_DIR")
    if storage:
        config.uploads = Path(storage).expanduser()
    # Fail at startup, not on the first recovery
    parse_namespace(config.namespace)
    return config


def load_config(data_dir: Path) -> DepotConfig:
    """
    Load configuration from a data directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = data_dir / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    # Validate version
    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    namespace = data.get("identity", {}).get("namespace", "")
    if not namespace:
        raise ValueError(f"Config has no [identity] namespace: {config_path}")

    storage = data.get("storage", {})
    uploads = storage.get("uploads")

    return DepotConfig(
        path=data_dir,
        namespace=namespace,
        admin_secret=data.get("admin", {}).get("secret", ""),
        backend=storage.get("backend", "local"),
        uploads=Path(uploads).expanduser() if uploads else None,
        version=version,
        created=data.get("store", {}).get("created", ""),
    )


def save_config(config: DepotConfig) -> None:
    """
    Save configuration to the data directory.

    Creates the directory if it doesn't exist.
    """
    if tomli_w is None:
        raise RuntimeError("tomli_w is required to save config. Install with: pip install tomli-w")

    config.path.mkdir(parents=True, exist_ok=True)

    storage: dict = {"backend": config.backend}
    if config.uploads is not None:
        storage["uploads"] = str(config.uploads)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "identity": {"namespace": config.namespace},
        "admin": {"secret": config.admin_secret},
        "storage": storage,
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(data_dir: Optional[Path] = None) -> DepotConfig:
    """
    Load existing config or create one with a fresh namespace.

    This is the main entry point for config management. Environment
    overrides are applied after loading and are never written back.
    """
    data_dir = data_dir if data_dir is not None else get_default_data_dir()
    config_path = data_dir / CONFIG_FILENAME

    if config_path.exists():
        config = load_config(data_dir)
    else:
        config = DepotConfig(path=data_dir)
        save_config(config)
    return apply_env_overrides(config)
