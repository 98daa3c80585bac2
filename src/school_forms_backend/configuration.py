from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

# Environment values feed the ${oc.env:...} interpolations in config.yaml
load_dotenv()

_HERE = Path(__file__).resolve()
DEFAULT_CONFIG_PATH = _HERE.parent / "config" / "config.yaml"


def config_path() -> Path:
    override = os.environ.get("FORMS_CONFIG_PATH")
    path = Path(override) if override else DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Forms backend config not found at {path}")
    return path


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    return OmegaConf.load(config_path())


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the runtime settings by merging overrides onto the defaults.

    The defaults are struct-locked, so an override naming an unknown key
    fails loudly instead of being silently ignored. Interpolations (mostly
    environment lookups) are resolved at this point, not at file load.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=False)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    merged = OmegaConf.merge(base, OmegaConf.create(overrides or {}))
    OmegaConf.resolve(merged)
    return merged  # type: ignore[return-value]


@lru_cache(maxsize=1)
def get_settings() -> DictConfig:
    return load_settings()


def split_csv(value: Any) -> List[str]:
    """Accept either a YAML list or a comma separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(item) for item in value]
    return [item.strip() for item in items if item and item.strip()]
