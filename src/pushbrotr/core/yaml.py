"""YAML configuration loading.

Used by [create_store()][pushbrotr.core.store.create_store] callers and by
[BaseService.from_yaml()][pushbrotr.core.base_service.BaseService.from_yaml].
Files are parsed with ``yaml.safe_load`` so YAML tags can never instantiate
Python objects.

Examples:
    ```python
    from pushbrotr.core.yaml import load_yaml

    config = load_yaml("config/services/notifier.yaml")
    ```
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError


def load_yaml(config_path: str) -> dict[str, Any]:
    """Load and parse a YAML configuration file.

    Args:
        config_path: Path to the YAML file (absolute or relative).

    Returns:
        The parsed mapping, or an empty dict for an empty file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigurationError: If the file is not valid YAML or its top level
            is not a mapping.

    Warning:
        The structure is not validated here. Pass the result to the
        matching pydantic model (for example
        [NotifierConfig][pushbrotr.services.notifier.NotifierConfig]).
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Top level of {config_path} must be a mapping")
    return data
