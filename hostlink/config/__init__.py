"""
Configuration management for hostlink.

This module loads the control socket settings and the host device layout
from TOML files. The defaults live next to this module in ``defaults.toml``;
a user file only needs to contain the keys it overrides.
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from hostlink.devices.state import DeviceClass

logger = logging.getLogger(__name__)

# Path to the config directory
CONFIG_DIR = Path(__file__).parent

DEFAULT_CONFIG_FILE = CONFIG_DIR / "defaults.toml"


class ConfigError(Exception):
    """Raised when a configuration file cannot be read or is invalid."""


@dataclass
class ServerSettings:
    """Control socket tuning knobs."""

    max_clients: int = 8
    buffer_size: int = 4096
    select_timeout: float = 0.2
    poll_interval: float = 0.05
    max_path_length: int = 4096
    listen_backlog: int = 4


@dataclass
class DeviceLayout:
    """Number of addressable slots per device class, plus monitor count."""

    fdd: int = 4
    cdrom: int = 4
    hdd: int = 7
    rdisk: int = 4
    mo: int = 4
    net: int = 4
    cartridge: int = 2
    monitors: int = 2

    def slots(self, device_class: "DeviceClass | str") -> int:
        """
        Get the slot count for a device class.

        Args:
            device_class: DeviceClass enum or its wire name (e.g. "fdd").

        Returns:
            Number of slots, 0 for an unknown class.
        """
        name = device_class if isinstance(device_class, str) else device_class.value
        return int(getattr(self, name, 0))


@dataclass
class ControlConfig:
    """Loaded hostlink configuration."""

    server: ServerSettings = field(default_factory=ServerSettings)
    devices: DeviceLayout = field(default_factory=DeviceLayout)


def _merge_section(target: Any, data: dict[str, Any], section: str) -> None:
    """Copy known keys from a TOML table onto a settings dataclass."""
    known = {f.name: f for f in fields(target)}

    for key, value in data.items():
        if key not in known:
            logger.warning("Ignoring unknown config key [%s] %s", section, key)
            continue

        current = getattr(target, key)
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigError(f"[{section}] {key} must be a number, got {value!r}")
        if isinstance(current, int) and not isinstance(value, int):
            raise ConfigError(f"[{section}] {key} must be an integer, got {value!r}")

        setattr(target, key, type(current)(value))


def _validate(config: ControlConfig) -> None:
    """Check value ranges after merging."""
    server = config.server

    if server.max_clients < 1:
        raise ConfigError("[server] max_clients must be at least 1")
    if server.buffer_size < 2:
        raise ConfigError("[server] buffer_size must be at least 2")
    if server.select_timeout <= 0:
        raise ConfigError("[server] select_timeout must be positive")
    if server.poll_interval <= 0:
        raise ConfigError("[server] poll_interval must be positive")
    if server.max_path_length < 1:
        raise ConfigError("[server] max_path_length must be at least 1")
    if server.listen_backlog < 1:
        raise ConfigError("[server] listen_backlog must be at least 1")

    for f in fields(config.devices):
        if getattr(config.devices, f.name) < 0:
            raise ConfigError(f"[devices] {f.name} must not be negative")


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e


def load_config(config_path: Path | None = None) -> ControlConfig:
    """
    Load the hostlink configuration.

    The bundled defaults are always read first; if ``config_path`` is given,
    its values override them.

    Args:
        config_path: Optional path to a user TOML file.

    Returns:
        Loaded and validated ControlConfig instance.

    Raises:
        ConfigError: If a file cannot be read or contains invalid values.
    """
    config = ControlConfig()

    sources = [DEFAULT_CONFIG_FILE]
    if config_path is not None:
        sources.append(config_path)

    for path in sources:
        logger.debug("Loading config from %s", path)
        data = _read_toml(path)

        for section, target in (("server", config.server), ("devices", config.devices)):
            table = data.get(section, {})
            if not isinstance(table, dict):
                raise ConfigError(f"[{section}] must be a table")
            _merge_section(target, table, section)

    _validate(config)
    return config
