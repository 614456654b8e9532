"""
Plugin manifests.

Each plugin lives in its own directory under the plugin directory:

    plugins/
        location-counter/
            manifest.json
            main.py

manifest.json:

    {
        "name": "location-counter",
        "main": "main.py",
        "settings": {"count": 0}
    }
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.json"


class Manifest(BaseModel):
    """What the host needs to know to load one plugin."""

    name: str = Field(min_length=1)
    main: str = Field(min_length=1, description="Entry module, relative to the plugin directory")
    entry: str = Field(default="create_plugin", description="Factory inside the entry module")
    settings: dict[str, Any] = Field(default_factory=dict, description="Default settings")
    path: Path = Field(default=Path("."), exclude=True)

    @property
    def main_path(self) -> Path:
        return self.path / self.main


def read_manifest(directory: Path) -> Manifest:
    """
    Read the manifest of one plugin directory.

    Raises:
        OSError: If the manifest cannot be read
        ValueError: If it is not valid JSON or not a valid manifest
    """
    with open(directory / MANIFEST_FILENAME, "r", encoding="utf-8") as f:
        data = json.load(f)
    manifest = Manifest.model_validate(data)
    manifest.path = directory
    return manifest


def discover_manifests(plugin_dir: Path) -> list[Manifest]:
    """
    Find all plugin manifests, ordered by directory name.

    Unreadable or invalid manifests are logged and skipped.
    """
    plugin_dir = Path(plugin_dir)
    if not plugin_dir.is_dir():
        logger.info("Plugin directory %s does not exist", plugin_dir)
        return []

    manifests: list[Manifest] = []
    seen: set[str] = set()
    for directory in sorted(p for p in plugin_dir.iterdir() if p.is_dir()):
        if not (directory / MANIFEST_FILENAME).exists():
            continue
        try:
            manifest = read_manifest(directory)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Skipping plugin in %s: %s", directory, e)
            continue
        if manifest.name in seen:
            logger.warning("Skipping duplicate plugin name '%s' in %s", manifest.name, directory)
            continue
        seen.add(manifest.name)
        manifests.append(manifest)

    return manifests
