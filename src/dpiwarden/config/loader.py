import logging
import os
import re
import yaml
from pathlib import Path
from typing import Any, Dict, Optional

from dpiwarden.core.models import HostConfig

logger = logging.getLogger(__name__)

ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::([^}]+))?\}")

ALLOWED_SECTIONS = {"dpiwarden", "engine", "http", "storage", "self_update"}


def interpolate_env_vars(content: str) -> str:
    """Replace ${VAR} or ${VAR:default} with environment variables."""
    def replace_match(match: re.Match) -> str:
        var_name = match.group(1)
        default_value = match.group(2) if match.group(2) is not None else ""
        return os.environ.get(var_name, default_value)

    return ENV_VAR_PATTERN.sub(replace_match, content)


def load_config(path: Path) -> Dict[str, Any]:
    """
    Load dpiwarden.yaml with environment variable interpolation.

    Keeps only the known sections: dpiwarden, engine, http, storage, self_update.
    A missing file yields an empty mapping; a malformed file raises.
    """
    if not path.exists():
        return {}

    content = path.read_text(encoding="utf-8")
    full_config = yaml.safe_load(interpolate_env_vars(content)) or {}
    if not isinstance(full_config, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(full_config).__name__}")

    ignored = sorted(set(full_config) - ALLOWED_SECTIONS)
    if ignored:
        logger.warning("Ignoring unknown config sections in %s: %s", path, ", ".join(ignored))

    return {k: v for k, v in full_config.items() if k in ALLOWED_SECTIONS}


def load_host_config(path: Optional[Path] = None) -> HostConfig:
    """Load and validate host configuration; without a path only env and defaults apply."""
    if path is None:
        return HostConfig.from_dict({})
    return HostConfig.from_dict(load_config(path))
