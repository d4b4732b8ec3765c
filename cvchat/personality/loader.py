"""Personality configuration loader."""

from pathlib import Path
from typing import Any

import yaml


_DEFAULT_PATH = Path(__file__).parent / "default.yaml"


def load_personality(path: Path | None = None) -> dict[str, Any]:
    """Load the assistant persona from a YAML file.

    Args:
        path: Optional path to personality YAML file.
              Defaults to default.yaml in this directory.

    Returns:
        Dictionary with personality configuration.

    Raises:
        FileNotFoundError: If the personality file does not exist.
        yaml.YAMLError: If the file contains invalid YAML.
    """
    config_path = path or _DEFAULT_PATH

    if not config_path.exists():
        raise FileNotFoundError(f"Personality file not found: {config_path}")

    with open(config_path, encoding="utf-8") as f:
        config: dict[str, Any] = yaml.safe_load(f)

    return config
