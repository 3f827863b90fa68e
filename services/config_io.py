"""Config file loading for JSON, YAML and TOML.

Format is always inferred from the file extension:
  .json        → JSON
  .yaml / .yml → YAML  (requires pyyaml)
  .toml        → TOML  (stdlib tomllib)

The first of config.json / config.yaml / config.yml / config.toml found in the
data directory wins.
"""
from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

import yaml

_YAML_EXTS = {".yaml", ".yml"}
_TOML_EXTS = {".toml"}

_CONFIG_NAMES = ["config.json", "config.yaml", "config.yml", "config.toml"]


def find_config(directory: Path) -> Path | None:
    """Return the first existing config file found in *directory*."""
    for name in _CONFIG_NAMES:
        p = directory / name
        if p.is_file():
            return p
    return None


def load_config(path: Path) -> dict[str, Any]:
    """Load a config file; an empty file yields ``{}``.

    Raises ``ValueError`` when the top level is not a mapping.
    """
    ext = path.suffix.lower()
    if ext in _YAML_EXTS:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    elif ext in _TOML_EXTS:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    else:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
        data = json.loads(text) if text.strip() else None

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data
