"""Loading of ``.docweave/config.yaml``."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Tuple

import yaml

from docweave.domain.documents.value_objects import UpdateConfig, UpdateConfigError

DEFAULT_CONFIG_RELATIVE = Path(".docweave/config.yaml")

_CONFIG_CACHE: Dict[Path, tuple[int, int, UpdateConfig]] = {}


def load_update_config(project_root: Path, path: Path | None = None) -> Tuple[UpdateConfig, Path]:
    """Load configuration from disk, falling back to defaults when absent."""

    config_path = (path or (project_root / DEFAULT_CONFIG_RELATIVE)).resolve()
    if not config_path.exists():
        if path is not None:
            raise UpdateConfigError(f"configuration file {config_path} does not exist")
        return UpdateConfig.default(), config_path

    stat = config_path.stat()
    cached = _CONFIG_CACHE.get(config_path)
    if cached and cached[0] == stat.st_mtime_ns and cached[1] == stat.st_size:
        return cached[2], config_path
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise UpdateConfigError(f"{config_path} is not valid YAML: {exc}") from exc
    config = UpdateConfig.from_dict(raw, config_path=config_path)
    _CONFIG_CACHE[config_path] = (stat.st_mtime_ns, stat.st_size, config)
    return config, config_path


def load_structured_file(path: Path) -> object:
    """Parse a JSON or YAML file (JSON is valid YAML)."""

    return yaml.safe_load(path.read_text(encoding="utf-8"))


__all__ = ["DEFAULT_CONFIG_RELATIVE", "load_structured_file", "load_update_config"]
