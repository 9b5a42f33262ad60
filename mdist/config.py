"""
Tool configuration: ~/.mdist/config.toml, falling back to defaults.

    data_dir = "~/.mdist"
    sort_addresses = false
    log_level = "WARNING"
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from mdist import DEFAULT_CONFIG_NAME, DEFAULT_DATA_DIR

log = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    "data_dir": DEFAULT_DATA_DIR,
    "sort_addresses": False,
    "log_level": "WARNING",
}


def default_config_path() -> Path:
    return Path(DEFAULT_DATA_DIR).expanduser() / DEFAULT_CONFIG_NAME


def load_config(config_path: Path | None = None) -> dict[str, Any]:
    """Load config from a TOML file, falling back to defaults."""
    config = dict(DEFAULT_CONFIG)

    path = config_path or default_config_path()
    if path.is_file():
        try:
            import tomllib
        except ImportError:
            try:
                import tomli as tomllib
            except ImportError:
                log.warning("tomllib/tomli not available, using default config")
                return config

        try:
            with open(path, "rb") as f:
                file_config = tomllib.load(f)
            config.update(
                {k: v for k, v in file_config.items() if k in DEFAULT_CONFIG}
            )
        except Exception as e:
            log.warning("Failed to load config from %s: %s", path, e)

    return config


def data_dir(config: dict[str, Any]) -> Path:
    return Path(str(config["data_dir"])).expanduser()
