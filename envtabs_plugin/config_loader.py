"""Locate, seed, read and persist the user's TabGroupConfig.json."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

from envtabs_plugin.config_models import (
    TabGroupConfig,
    config_to_payload,
    parse_tab_group_config,
)

LOGGER = logging.getLogger("EnvTabs.Config")

CONFIG_DIR_NAME = "EnvTabs"
CONFIG_FILE_NAME = "TabGroupConfig.json"
_LEADING_JUNK = "\ufeff\u200b\u0000 \t\r\n"

DEFAULT_CONFIG: Dict[str, Any] = {
    "description": "EnvTabs tab grouping rules. Rules are matched by server/database; '%' is a wildcard.",
    "help": "Lower priority wins. colorIndex is 0-15. manualRegexLines match file paths directly.",
    "settings": {
        "enableLogging": True,
        "enableAutoRename": True,
        "enableAutoColor": False,
        "enableConfigurePrompt": True,
        "enableConnectionPolling": True,
        "enableColorWarning": True,
        "enableServerAliasPrompt": True,
        "enableUpdateChecks": True,
        "autoConfigure": "server db",
        "newQueryRenameStyle": "[groupName][#]",
        "savedFileRenameStyle": "[filename] [groupName]",
    },
    "serverAlias": {},
    "connectionGroups": [],
    "manualRegexLines": [],
}


class TabGroupConfigError(ValueError):
    """Raised when the config file decodes to something other than an object."""


@dataclass(frozen=True)
class ConfigSignature:
    mtime_ns: Optional[int]
    size: Optional[int]


def default_config_path() -> Path:
    return Path.home() / "Documents" / CONFIG_DIR_NAME / CONFIG_FILE_NAME


class TabGroupConfigLoader:
    """Reads, seeds and saves the tab group config file."""

    def __init__(self, path: Optional[Path] = None, logger: Optional[logging.Logger] = None) -> None:
        self._path = Path(path) if path is not None else default_config_path()
        self._logger = logger or LOGGER

    @property
    def path(self) -> Path:
        return self._path

    # Public API ---------------------------------------------------------

    def ensure_default_config_exists(self) -> bool:
        """Seed the default config when no file exists; return True if written."""

        if self._path.exists():
            return False
        text = json.dumps(DEFAULT_CONFIG, indent=2) + "\n"
        try:
            self._write_atomic(text)
        except OSError as exc:
            self._logger.warning("Failed to create default config at %s: %s", self._path, exc)
            return False
        self._logger.info("Created default config at %s", self._path)
        return True

    def load_or_none(self) -> Optional[TabGroupConfig]:
        """Return the parsed config, or None when missing, empty or unreadable."""

        try:
            raw = self._read_json()
        except (OSError, json.JSONDecodeError, TabGroupConfigError) as exc:
            self._logger.info("Config load failed: %s", exc)
            return None
        if raw is None:
            return None
        return parse_tab_group_config(raw)

    def save(self, config: TabGroupConfig) -> bool:
        text = json.dumps(config_to_payload(config), indent=2) + "\n"
        try:
            self._write_atomic(text)
        except OSError as exc:
            self._logger.warning("Config save failed for %s: %s", self._path, exc)
            return False
        return True

    def update_version_if_needed(self, config: TabGroupConfig, version: str) -> TabGroupConfig:
        """Stamp the running version into the config file when it differs."""

        if not version or config.version == version:
            return config
        updated = replace(config, version=version)
        if self.save(updated):
            self._logger.info("Config version updated to %s", version)
        return updated

    def current_signature(self) -> ConfigSignature:
        try:
            stat = self._path.stat()
        except FileNotFoundError:
            return ConfigSignature(None, None)
        except OSError as exc:  # pragma: no cover - filesystem issues
            self._logger.debug("Failed to stat %s: %s", self._path, exc)
            return ConfigSignature(None, None)
        return ConfigSignature(stat.st_mtime_ns, stat.st_size)

    # Internal helpers ---------------------------------------------------

    def _read_json(self) -> Optional[Dict[str, Any]]:
        try:
            text = self._path.read_text(encoding="utf-8-sig")
        except FileNotFoundError:
            return None
        text = text.lstrip(_LEADING_JUNK)
        if not text.strip():
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            self._logger.warning("Config file %s is not valid JSON: %s", self._path, exc)
            raise
        if not isinstance(data, dict):
            raise TabGroupConfigError(f"{self._path} must contain a JSON object at the root")
        return data

    def _write_atomic(self, text: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(text, encoding="utf-8")
        tmp_path.replace(self._path)
