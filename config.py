from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

"""Config loader and validator.

Provides `load_config` which accepts either a path to a YAML file,
a dictionary or None and returns a normalized configuration dict
using DEFAULTS for missing values.
"""


DEFAULTS: dict[str, Any] = {
    "pc_start": 0x3000,
    "kbsr": 0xFE00,
    "kbdr": 0xFE02,
    "in_prompt": "Enter a character: ",
    "halt_message": "HALT\n",
    "image_overflow": "error",
    "lenient_log": False,
}

OVERFLOW_POLICIES = ("error", "truncate", "wrap")

_ADDRESS_KEYS = ("pc_start", "kbsr", "kbdr")


class ConfigError(ValueError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def _to_int(v: Any) -> int:
    # YAML may hand us "0x3000" as a string when it is quoted
    if isinstance(v, str):
        return int(v, 0)
    return int(v)


def _convert_types(cfg: dict[str, Any]) -> None:
    """Normalize types for configuration values in-place.

    Raises ConfigError on conversion failure.
    """
    try:
        for key in _ADDRESS_KEYS:
            v = cfg.get(key)
            cfg[key] = DEFAULTS[key] if v is None else _to_int(v)

        for key in ("in_prompt", "halt_message"):
            v = cfg.get(key)
            cfg[key] = "" if v is None else str(v)

        cfg["image_overflow"] = str(cfg.get("image_overflow") or DEFAULTS["image_overflow"]).lower()

        # lenient_log (bool coercion)
        cfg["lenient_log"] = bool(cfg.get("lenient_log", DEFAULTS["lenient_log"]))
    except Exception as e:
        msg = f"Bad types in config: {e}"
        raise ConfigError(msg) from e


def _validate_cfg(cfg: dict[str, Any]) -> None:
    """Perform semantic validation on normalized config dict.

    Raises ConfigError on invalid values.
    """
    for key in _ADDRESS_KEYS:
        if not (0 <= cfg[key] <= 0xFFFF):
            msg = f"{key} (0x{cfg[key]:X}) out of address range (0x0000..0xFFFF)"
            raise ConfigError(msg)

    if cfg["kbsr"] == cfg["kbdr"]:
        msg = "kbsr and kbdr must be different addresses"
        raise ConfigError(msg)

    if cfg["image_overflow"] not in OVERFLOW_POLICIES:
        msg = f"image_overflow must be one of {', '.join(OVERFLOW_POLICIES)}"
        raise ConfigError(msg)


def _read_yaml_mapping(p: Path) -> dict[str, Any]:
    """Read a YAML file that must hold a mapping (an empty file counts as {})."""
    if not p.is_file():
        msg = f"Config file not found: {p}"
        raise ConfigError(msg)
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        msg = f"Failed to load config file {p}: {e}"
        raise ConfigError(msg) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        msg = f"Config file {p} does not contain a mapping"
        raise ConfigError(msg)
    return data


def load_config(path_or_dict: str | Path | dict[str, Any] | None = None) -> dict[str, Any]:
    """Load and normalize configuration.

    Accepts:
      - None -> returns DEFAULTS copy
      - dict -> VM settings overlaid on DEFAULTS
      - str or Path -> YAML mapping file overlaid on DEFAULTS

    Unknown keys are rejected so a typo cannot silently fall back to a default.
    Returns a normalized dict or raises ConfigError.
    """
    if path_or_dict is None:
        overrides: dict[str, Any] = {}
    elif isinstance(path_or_dict, dict):
        overrides = path_or_dict
    elif isinstance(path_or_dict, (str, Path)):
        overrides = _read_yaml_mapping(Path(path_or_dict))
    else:
        msg = f"Unsupported config input: {type(path_or_dict).__name__}"
        raise ConfigError(msg)

    unknown = sorted(str(k) for k in overrides if k not in DEFAULTS)
    if unknown:
        msg = f"Unknown config keys: {', '.join(unknown)}"
        raise ConfigError(msg)

    cfg = {**DEFAULTS, **overrides}
    _convert_types(cfg)
    _validate_cfg(cfg)
    return cfg
