"""
Driver configuration.

Settings resolution order, per field:
1. Explicit override (command-line flag)
2. Environment variable
3. YAML config file
4. Default
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from dracpu.defaults import DEFAULT_CDI_ROOT, DRIVER_PLUGIN_PATH

logger = logging.getLogger(__name__)

ENV_VARS = {
    "node_name": "NODE_NAME",
    "cdi_root": "CDI_ROOT",
    "plugin_path": "DRA_CPU_PLUGIN_PATH",
    "reserved_cpus": "RESERVED_CPUS",
    "allocatable_cpus": "ALLOCATABLE_CPUS",
    "shared_cpus": "SHARED_CPUS",
}

# Config file keys use the same spelling as the command-line flags.
FILE_KEYS = {
    "node-name": "node_name",
    "cdi-root": "cdi_root",
    "plugin-path": "plugin_path",
    "reserved-cpus": "reserved_cpus",
    "allocatable-cpus": "allocatable_cpus",
    "shared-cpus": "shared_cpus",
}


@dataclass
class DriverConfig:
    node_name: str = ""
    cdi_root: str = DEFAULT_CDI_ROOT
    plugin_path: str = DRIVER_PLUGIN_PATH
    reserved_cpus: str = ""
    allocatable_cpus: str = ""
    shared_cpus: str = ""

    def validate(self) -> None:
        """
        Raises:
            ValueError: If a required setting is missing
        """
        if not self.node_name:
            raise ValueError("node name is required (--node-name or NODE_NAME)")
        if not Path(self.cdi_root).is_absolute():
            raise ValueError(f"CDI root must be an absolute path: {self.cdi_root}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _load_config_file(config_file: str | Path) -> dict[str, Any]:
    """
    Read settings from a YAML file.

    Missing, empty, malformed or non-mapping files yield an empty dict so a
    bad file never prevents startup; the problem is logged instead.
    """
    path = Path(config_file)
    if not path.exists():
        logger.debug(f"Config file {path} not found, using defaults")
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.warning(f"Malformed YAML in config file {path}: {e}. Using defaults.")
        return {}
    except OSError as e:
        logger.warning(f"Could not read config file {path}: {e}")
        return {}

    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning(
            f"Config file {path} contains invalid type: {type(data).__name__}, "
            "expected mapping. Using defaults."
        )
        return {}

    settings: dict[str, Any] = {}
    for key, value in data.items():
        attr = FILE_KEYS.get(key)
        if attr is None:
            logger.warning(f"Ignoring unknown key {key!r} in config file {path}")
            continue
        if value is None:
            continue
        settings[attr] = str(value)
    return settings


def load_config(
    config_file: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> DriverConfig:
    """
    Resolve the driver configuration from every source.

    Args:
        config_file: Optional YAML file with flag-named keys
        overrides: Field name to value; None values are ignored

    Returns:
        The resolved configuration (not yet validated)
    """
    file_settings = _load_config_file(config_file) if config_file else {}
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}

    resolved: dict[str, Any] = {}
    for f in fields(DriverConfig):
        if f.name in overrides:
            resolved[f.name] = str(overrides[f.name])
            continue

        env_value = os.environ.get(ENV_VARS[f.name])
        if env_value:
            resolved[f.name] = env_value
            continue

        if f.name in file_settings:
            resolved[f.name] = file_settings[f.name]

    return DriverConfig(**resolved)
