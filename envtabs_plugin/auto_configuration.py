"""Add a connection rule the first time an unmatched server/database is seen."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Optional, Set

from envtabs_plugin.config_loader import TabGroupConfigLoader
from envtabs_plugin.config_models import COLOR_INDEX_MAX, COLOR_INDEX_MIN, TabGroupConfig, TabGroupRule
from envtabs_plugin.rule_matcher import compile_manual_rules, compile_rules, match_manual, match_rule

LOGGER = logging.getLogger("EnvTabs.AutoConfig")

NEW_RULE_PRIORITY = 10
RENUMBER_BASE = 20
RENUMBER_STEP = 10

PromptCallback = Callable[[TabGroupRule, Path], None]


def connection_key(server: str, database: Optional[str], uses_database: bool) -> str:
    if uses_database:
        return f"{server}::{database or ''}"
    return server


def next_free_color(rules: List[TabGroupRule]) -> int:
    used = {rule.color_index for rule in rules}
    for index in range(COLOR_INDEX_MIN, COLOR_INDEX_MAX + 1):
        if index not in used:
            return index
    return COLOR_INDEX_MIN


def renumber_rules(
    rules: List[TabGroupRule],
    base: int = RENUMBER_BASE,
    step: int = RENUMBER_STEP,
) -> List[TabGroupRule]:
    """Respace priorities as ``base, base+step, ...`` keeping their relative order."""

    ordered = sorted(rules, key=lambda rule: rule.priority)
    return [
        TabGroupRule(
            group_name=rule.group_name,
            server=rule.server,
            database=rule.database,
            priority=base + step * position,
            color_index=rule.color_index,
        )
        for position, rule in enumerate(ordered)
    ]


class AutoConfigurationService:
    """Writes a new rule for an unmatched connection; each connection is proposed once."""

    def __init__(
        self,
        loader: TabGroupConfigLoader,
        prompt: Optional[PromptCallback] = None,
        renumber_base: int = RENUMBER_BASE,
        renumber_step: int = RENUMBER_STEP,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._loader = loader
        self._prompt = prompt
        self._renumber_base = renumber_base
        self._renumber_step = max(1, renumber_step)
        self._logger = logger or LOGGER
        self._suppressed: Set[str] = set()

    @property
    def suppressed(self) -> Set[str]:
        return set(self._suppressed)

    def clear_suppressed(self) -> None:
        self._suppressed.clear()

    def is_suppressed(self, config: TabGroupConfig, server: Optional[str], database: Optional[str]) -> bool:
        server = (server or "").strip()
        return connection_key(server, database, config.settings.auto_configure_uses_database) in self._suppressed

    def build_rule(self, config: TabGroupConfig, server: str, database: Optional[str]) -> TabGroupRule:
        uses_database = config.settings.auto_configure_uses_database
        database = (database or "").strip()
        if uses_database and database:
            group_name = f"{server}.{database}"
        else:
            group_name = server
        return TabGroupRule(
            group_name=group_name,
            server=server,
            database=(database or "%") if uses_database else "%",
            priority=NEW_RULE_PRIORITY,
            color_index=next_free_color(list(config.connection_groups)),
        )

    def propose_new_rule(
        self,
        config: Optional[TabGroupConfig],
        server: Optional[str],
        database: Optional[str],
        path: Optional[str] = None,
    ) -> bool:
        """Add and save a rule for *server*/*database*; return True if one was written.

        Connections already covered by a rule, or documents whose *path* hits a
        manual rule, are left alone.
        """

        if config is None or not config.settings.auto_configure_enabled:
            return False
        server = (server or "").strip()
        if not server:
            return False
        key = connection_key(server, database, config.settings.auto_configure_uses_database)
        if key in self._suppressed:
            return False
        if match_rule(compile_rules(config), server, database) is not None:
            return False
        if path and match_manual(compile_manual_rules(config), path) is not None:
            return False
        self._suppressed.add(key)

        rule = self.build_rule(config, server, database)
        rules = renumber_rules(list(config.connection_groups), self._renumber_base, self._renumber_step)
        rules.append(rule)
        if not self._loader.save(config.with_rules(rules)):
            return False
        self._logger.info(
            "Auto-configured group '%s' for server='%s' database='%s' colorIndex=%s",
            rule.group_name,
            rule.server,
            rule.database,
            rule.color_index,
        )
        if config.settings.enable_configure_prompt and self._prompt is not None:
            self._prompt(rule, self._loader.path)
        return True
