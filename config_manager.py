"""
Preferences for the bitmap dithering tool: default pipeline parameters,
export options (upscale and output name), named presets and recent inputs.
Everything lives in one JSON file next to the working directory.
"""

import copy
import json
import logging
import os
from typing import Any, Dict, List, Optional

from bitdither_lib import DitherSettings

__all__ = [
    'ConfigManager',
]

logger = logging.getLogger('bitdither')

MAX_RECENT_FILES = 10


class ConfigManager:
    """Reads, edits and writes the preferences file."""

    DEFAULT_CONFIG = {
        # same layout as DitherSettings.to_dict()
        "defaults": DitherSettings().to_dict(),

        "export": {
            "upscale_multiplier": 1,
            "filename": "dithered.png"
        },

        # name -> DitherSettings.to_dict()
        "presets": {},

        "recent_files": []
    }

    def __init__(self, config_file: str = "bitdither_config.json"):
        """
        Args:
            config_file: Preferences JSON; created with defaults when missing
        """
        self.config_file = config_file
        self.config = self._load_config()

    def _load_config(self) -> Dict:
        defaults = copy.deepcopy(self.DEFAULT_CONFIG)
        if not os.path.exists(self.config_file):
            self.config = defaults
            self.save()
            return defaults

        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                stored = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable preferences {self.config_file}: {e}")
            return defaults

        # keys added since the file was written fall back to defaults
        return self._merge_configs(defaults, stored)

    def _merge_configs(self, base: Dict, stored: Any) -> Dict:
        """
        Overlay 'stored' onto 'base', section by section.
        Empty default sections (presets) take the stored value wholesale.
        """
        if not isinstance(stored, dict):
            return base
        for key, default_value in base.items():
            if key not in stored:
                continue
            stored_value = stored[key]
            if isinstance(default_value, dict) and default_value and isinstance(stored_value, dict):
                base[key] = self._merge_configs(default_value, stored_value)
            else:
                base[key] = stored_value
        return base

    def save(self):
        """Write the preferences file; failures are logged, not raised."""
        try:
            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=4)
        except OSError as e:
            logger.error(f"Could not write preferences {self.config_file}: {e}")

    def get(self, *keys: str, default: Any = None) -> Any:
        """
        Walk nested sections, e.g. get("export", "filename").
        Returns 'default' as soon as a key is missing.
        """
        node = self.config
        for key in keys:
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node

    def set(self, *keys: str, value: Any):
        """
        Assign into nested sections, creating them on the way,
        e.g. set("export", "upscale_multiplier", value=4).
        """
        if not keys:
            return
        *parents, leaf = keys
        node = self.config
        for key in parents:
            node = node.setdefault(key, {})
        node[leaf] = value

    def default_settings(self) -> DitherSettings:
        """
        Settings snapshot from the "defaults" section.
        Built-in defaults are used if the stored values don't parse.
        """
        try:
            return DitherSettings.from_dict(self.get("defaults", default={}))
        except (ValueError, TypeError) as e:
            logger.warning(f"Stored defaults are invalid, using built-ins: {e}")
            return DitherSettings()

    def save_defaults(self, settings: DitherSettings):
        self.set("defaults", value=settings.to_dict())

    # -------------------- Presets --------------------

    def save_preset(self, name: str, settings: DitherSettings):
        """Store a named settings snapshot (replaces an existing one)."""
        self.set("presets", name, value=settings.to_dict())

    def get_preset(self, name: str) -> Optional[DitherSettings]:
        """
        Returns:
            DitherSettings, or None if the preset is missing or invalid
        """
        data = self.get("presets", name)
        if data is None:
            return None
        try:
            return DitherSettings.from_dict(data)
        except (ValueError, TypeError) as e:
            logger.warning(f"Preset '{name}' is invalid: {e}")
            return None

    def get_preset_dict(self, name: str) -> Optional[Dict]:
        data = self.get("presets", name)
        return copy.deepcopy(data) if isinstance(data, dict) else None

    def list_presets(self) -> List[str]:
        return sorted(self.get("presets", default={}).keys())

    def remove_preset(self, name: str):
        self.get("presets", default={}).pop(name, None)

    # -------------------- Recent files --------------------

    def add_recent_file(self, filepath: str, max_recent: int = MAX_RECENT_FILES):
        """Move 'filepath' to the front of the recent list, keeping at most 'max_recent'."""
        recent = [f for f in self.get("recent_files", default=[]) if f != filepath]
        self.set("recent_files", value=[filepath] + recent[:max_recent - 1])

    def get_recent_files(self, max_count: int = MAX_RECENT_FILES) -> List[str]:
        """Recent inputs that still exist on disk, newest first."""
        return [f for f in self.get("recent_files", default=[]) if os.path.exists(f)][:max_count]
