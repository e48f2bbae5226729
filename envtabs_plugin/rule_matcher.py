"""Compile connection and file-path rules and answer which group a tab belongs to."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Pattern, Sequence

from envtabs_plugin.config_models import TabGroupConfig

LOGGER = logging.getLogger("EnvTabs.RuleMatcher")

WILDCARD = "%"


@dataclass(frozen=True)
class _LikePattern:
    """A server/database pattern where ``%`` matches any run of characters."""

    text: str
    regex: Optional[Pattern[str]] = field(default=None, compare=False)

    @classmethod
    def build(cls, raw: Optional[str]) -> Optional["_LikePattern"]:
        text = (raw or "").strip()
        if not text:
            return None
        if WILDCARD not in text:
            return cls(text)
        body = ".*".join(re.escape(part) for part in text.split(WILDCARD))
        return cls(text, re.compile(f"^{body}$", re.IGNORECASE | re.DOTALL))

    def matches(self, value: Optional[str]) -> bool:
        if value is None or not value.strip():
            return False
        if self.regex is None:
            return self.text.casefold() == value.casefold()
        return self.regex.match(value) is not None


@dataclass(frozen=True)
class CompiledRule:
    group_name: str
    priority: int
    color_index: int
    server: Optional[_LikePattern]
    database: Optional[_LikePattern]

    @property
    def server_pattern(self) -> str:
        return self.server.text if self.server else ""

    @property
    def database_pattern(self) -> str:
        return self.database.text if self.database else ""

    def matches(self, server: Optional[str], database: Optional[str]) -> bool:
        if self.server is not None and not self.server.matches(server):
            return False
        if self.database is not None and not self.database.matches(database):
            return False
        return True


@dataclass(frozen=True)
class CompiledManualRule:
    group_name: str
    pattern: str
    priority: int
    color_index: Optional[int]
    regex: Pattern[str] = field(compare=False)

    def matches(self, path: Optional[str]) -> bool:
        if not path:
            return False
        return self.regex.search(path) is not None


def compile_rules(config: Optional[TabGroupConfig]) -> List[CompiledRule]:
    """Compile connection rules ordered by priority, then group name."""

    if config is None:
        return []
    compiled: List[CompiledRule] = []
    for rule in config.connection_groups:
        group_name = rule.group_name.strip()
        if not group_name:
            continue
        server = _LikePattern.build(rule.server)
        database = _LikePattern.build(rule.database)
        if server is None and database is None:
            LOGGER.debug("Skipping rule for group '%s': no server or database pattern", group_name)
            continue
        compiled.append(CompiledRule(group_name, rule.priority, rule.color_index, server, database))
    compiled.sort(key=lambda item: (item.priority, item.group_name.casefold()))
    return compiled


def match_rule(
    rules: Sequence[CompiledRule],
    server: Optional[str],
    database: Optional[str],
) -> Optional[CompiledRule]:
    """Return the first rule whose non-empty patterns all match."""

    for rule in rules:
        if rule.matches(server, database):
            return rule
    return None


def match_group(
    rules: Sequence[CompiledRule],
    server: Optional[str],
    database: Optional[str],
) -> Optional[str]:
    rule = match_rule(rules, server, database)
    return rule.group_name if rule is not None else None


def compile_manual_rules(config: Optional[TabGroupConfig]) -> List[CompiledManualRule]:
    """Compile manual file-path rules; invalid patterns are logged and dropped."""

    if config is None:
        return []
    compiled: List[CompiledManualRule] = []
    for entry in config.manual_regex_lines:
        try:
            regex = re.compile(entry.pattern, re.IGNORECASE)
        except re.error as exc:
            LOGGER.warning(
                "Ignoring manual regex for group '%s' (%s): %s", entry.group_name, entry.pattern, exc
            )
            continue
        compiled.append(
            CompiledManualRule(
                group_name=entry.group_name.strip(),
                pattern=entry.pattern,
                priority=entry.priority,
                color_index=entry.color_index,
                regex=regex,
            )
        )
    # list.sort is stable, so equal priorities keep file order.
    compiled.sort(key=lambda item: item.priority)
    return compiled


def match_manual(rules: Sequence[CompiledManualRule], path: Optional[str]) -> Optional[CompiledManualRule]:
    for rule in rules:
        if rule.matches(path):
            return rule
    return None
