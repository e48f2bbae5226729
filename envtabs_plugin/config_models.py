"""Typed view of the tab-group configuration file.

The JSON document uses camelCase keys; the dataclasses below expose them as
snake_case attributes. Parsing never raises on bad values: anything missing or
of the wrong type falls back to the documented default so a half-edited file
still yields a usable config.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

LOGGER = logging.getLogger("EnvTabs.Config")

DEFAULT_RULE_PRIORITY = 0
DEFAULT_MANUAL_PRIORITY = 50
DEFAULT_NEW_QUERY_RENAME_STYLE = "[groupName][#]"
DEFAULT_SAVED_FILE_RENAME_STYLE = "[filename] [groupName]"
COLOR_INDEX_MIN = 0
COLOR_INDEX_MAX = 15


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        token = value.strip().lower()
        if token in {"1", "true", "yes", "on"}:
            return True
        if token in {"0", "false", "no", "off"}:
            return False
    return default


def _coerce_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _coerce_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    if not isinstance(value, (str, int, float)):
        return default
    return str(value).strip()


@dataclass(frozen=True)
class TabGroupSettings:
    enable_logging: bool = True
    enable_auto_rename: bool = True
    enable_auto_color: bool = False
    enable_configure_prompt: bool = True
    enable_connection_polling: bool = True
    enable_color_warning: bool = True
    enable_server_alias_prompt: bool = True
    enable_update_checks: bool = True
    auto_configure: str = ""
    new_query_rename_style: str = DEFAULT_NEW_QUERY_RENAME_STYLE
    saved_file_rename_style: str = DEFAULT_SAVED_FILE_RENAME_STYLE

    @property
    def auto_configure_enabled(self) -> bool:
        return self.auto_configure.strip().lower() not in {"", "none"}

    @property
    def auto_configure_uses_database(self) -> bool:
        return "db" in self.auto_configure.lower()


@dataclass(frozen=True)
class TabGroupRule:
    group_name: str
    server: str = ""
    database: str = ""
    priority: int = DEFAULT_RULE_PRIORITY
    color_index: int = 0


@dataclass(frozen=True)
class ManualRegexEntry:
    group_name: str
    pattern: str
    priority: int = DEFAULT_MANUAL_PRIORITY
    color_index: Optional[int] = None


@dataclass(frozen=True)
class TabGroupConfig:
    description: str = ""
    help: str = ""
    version: str = ""
    settings: TabGroupSettings = field(default_factory=TabGroupSettings)
    connection_groups: Tuple[TabGroupRule, ...] = ()
    manual_regex_lines: Tuple[ManualRegexEntry, ...] = ()
    server_alias: Mapping[str, str] = field(default_factory=dict)

    def alias_for(self, server: Optional[str]) -> Optional[str]:
        """Return the configured display alias for *server* (case-insensitive)."""

        if not server:
            return None
        key = server.strip().casefold()
        for name, alias in self.server_alias.items():
            if name.strip().casefold() == key and alias:
                return alias
        return None

    def with_rules(self, rules: Iterable[TabGroupRule]) -> "TabGroupConfig":
        return replace(self, connection_groups=tuple(rules))

    def with_settings(self, **changes: Any) -> "TabGroupConfig":
        return replace(self, settings=replace(self.settings, **changes))


# Parsing ------------------------------------------------------------------

_SETTINGS_KEYS: Dict[str, str] = {
    "enableLogging": "enable_logging",
    "enableAutoRename": "enable_auto_rename",
    "enableAutoColor": "enable_auto_color",
    "enableConfigurePrompt": "enable_configure_prompt",
    "enableConnectionPolling": "enable_connection_polling",
    "enableColorWarning": "enable_color_warning",
    "enableServerAliasPrompt": "enable_server_alias_prompt",
    "enableUpdateChecks": "enable_update_checks",
}


def parse_settings(raw: Any) -> TabGroupSettings:
    defaults = TabGroupSettings()
    if not isinstance(raw, Mapping):
        return defaults
    values: Dict[str, Any] = {}
    for json_key, attr in _SETTINGS_KEYS.items():
        values[attr] = _coerce_bool(raw.get(json_key), getattr(defaults, attr))
    values["auto_configure"] = _coerce_str(raw.get("autoConfigure"), defaults.auto_configure)
    values["new_query_rename_style"] = (
        _coerce_str(raw.get("newQueryRenameStyle")) or defaults.new_query_rename_style
    )
    values["saved_file_rename_style"] = (
        _coerce_str(raw.get("savedFileRenameStyle")) or defaults.saved_file_rename_style
    )
    return TabGroupSettings(**values)


def parse_rule(raw: Any) -> Optional[TabGroupRule]:
    if not isinstance(raw, Mapping):
        return None
    return TabGroupRule(
        group_name=_coerce_str(raw.get("groupName")),
        server=_coerce_str(raw.get("server")),
        database=_coerce_str(raw.get("database")),
        priority=_coerce_int(raw.get("priority"), DEFAULT_RULE_PRIORITY),
        color_index=_coerce_int(raw.get("colorIndex"), 0),
    )


def parse_manual_entry(raw: Any) -> Optional[ManualRegexEntry]:
    if not isinstance(raw, Mapping):
        return None
    pattern = raw.get("pattern")
    if not isinstance(pattern, str) or not pattern.strip():
        return None
    # Patterns are kept verbatim; whitespace can be significant in a regex.
    return ManualRegexEntry(
        group_name=_coerce_str(raw.get("groupName")),
        pattern=pattern,
        priority=_coerce_int(raw.get("priority"), DEFAULT_MANUAL_PRIORITY),
        color_index=_coerce_optional_int(raw.get("colorIndex")),
    )


def _parse_aliases(raw: Any) -> Dict[str, str]:
    if not isinstance(raw, Mapping):
        return {}
    aliases: Dict[str, str] = {}
    for key, value in raw.items():
        name = _coerce_str(key)
        alias = _coerce_str(value)
        if name and alias:
            aliases[name] = alias
    return aliases


def parse_tab_group_config(raw: Any) -> TabGroupConfig:
    """Build a :class:`TabGroupConfig` from decoded JSON."""

    if not isinstance(raw, Mapping):
        return TabGroupConfig()

    raw_groups = raw.get("connectionGroups")
    if raw_groups is None:
        raw_groups = raw.get("groups")
    rules = []
    if isinstance(raw_groups, list):
        for index, entry in enumerate(raw_groups):
            rule = parse_rule(entry)
            if rule is None:
                LOGGER.debug("Ignoring connection group #%s: not an object", index)
                continue
            rules.append(rule)

    manual = []
    raw_manual = raw.get("manualRegexLines")
    if isinstance(raw_manual, list):
        for index, entry in enumerate(raw_manual):
            parsed = parse_manual_entry(entry)
            if parsed is None:
                LOGGER.debug("Ignoring manual regex line #%s: missing pattern", index)
                continue
            manual.append(parsed)

    return TabGroupConfig(
        description=_coerce_str(raw.get("description")),
        help=_coerce_str(raw.get("help")),
        version=_coerce_str(raw.get("version")),
        settings=parse_settings(raw.get("settings")),
        connection_groups=tuple(rules),
        manual_regex_lines=tuple(manual),
        server_alias=_parse_aliases(raw.get("serverAlias")),
    )


# Serialisation ------------------------------------------------------------


def settings_to_payload(settings: TabGroupSettings) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        json_key: getattr(settings, attr) for json_key, attr in _SETTINGS_KEYS.items()
    }
    payload["autoConfigure"] = settings.auto_configure
    payload["newQueryRenameStyle"] = settings.new_query_rename_style
    payload["savedFileRenameStyle"] = settings.saved_file_rename_style
    return payload


def rule_to_payload(rule: TabGroupRule) -> Dict[str, Any]:
    return {
        "groupName": rule.group_name,
        "server": rule.server,
        "database": rule.database,
        "priority": rule.priority,
        "colorIndex": rule.color_index,
    }


def manual_entry_to_payload(entry: ManualRegexEntry) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "groupName": entry.group_name,
        "pattern": entry.pattern,
        "priority": entry.priority,
    }
    if entry.color_index is not None:
        payload["colorIndex"] = entry.color_index
    return payload


def config_to_payload(config: TabGroupConfig) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    if config.description:
        payload["description"] = config.description
    if config.help:
        payload["help"] = config.help
    if config.version:
        payload["version"] = config.version
    payload["settings"] = settings_to_payload(config.settings)
    payload["serverAlias"] = dict(config.server_alias)
    payload["connectionGroups"] = [rule_to_payload(rule) for rule in config.connection_groups]
    payload["manualRegexLines"] = [manual_entry_to_payload(entry) for entry in config.manual_regex_lines]
    return payload
