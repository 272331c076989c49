"""
k3se/utils/config.py

Loads the cluster configuration file (k3se.yml by default) into a Config.
Validation of cluster invariants happens in verify_config; this module only
turns YAML into typed models.
"""

from __future__ import annotations

from typing import Any

import aiofiles
import yaml

from k3se.errors import ConfigInvalid
from k3se.models.k3s import PROGRAM, Config
from k3se.models.validator import validate_type

DEFAULT_CONFIG_PATH = f"{PROGRAM}.yml"


def parse_config(text: str) -> Config:
    """
    Parse a YAML cluster configuration.

    Raises:
        ConfigInvalid: If the YAML is malformed or does not match the schema.
    """
    try:
        raw: Any = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigInvalid([f"malformed YAML: {exc}"]) from exc

    if raw is None:
        raise ConfigInvalid(["configuration empty"])

    return validate_type(raw, Config, ConfigInvalid)


async def load_config(path: str = DEFAULT_CONFIG_PATH) -> Config:
    """
    Read and parse the configuration file at `path`.

    Raises:
        ConfigInvalid: If the file cannot be read or parsed.
    """
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            text = await f.read()
    except OSError as exc:
        raise ConfigInvalid([f"cannot read {path}: {exc}"]) from exc
    return parse_config(text)
