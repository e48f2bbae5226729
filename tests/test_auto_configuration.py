from __future__ import annotations

import json

from envtabs_plugin import auto_configuration
from envtabs_plugin.config_loader import TabGroupConfigLoader
from envtabs_plugin.config_models import ManualRegexEntry, TabGroupConfig, TabGroupRule, TabGroupSettings


def _config(mode="server db", prompt=True, rules=()):
    settings = TabGroupSettings(auto_configure=mode, enable_configure_prompt=prompt)
    return TabGroupConfig(settings=settings, connection_groups=tuple(rules))


def test_next_free_color_skips_used_indices():
    rules = [TabGroupRule("A", server="a", color_index=0), TabGroupRule("B", server="b", color_index=1)]
    assert auto_configuration.next_free_color(rules) == 2
    full = [TabGroupRule(str(index), server="s", color_index=index) for index in range(16)]
    assert auto_configuration.next_free_color(full) == 0


def test_renumber_rules_keeps_relative_order():
    rules = [
        TabGroupRule("Late", server="l", priority=99),
        TabGroupRule("Early", server="e", priority=1),
        TabGroupRule("Middle", server="m", priority=50),
    ]
    renumbered = auto_configuration.renumber_rules(rules)
    assert [(rule.group_name, rule.priority) for rule in renumbered] == [
        ("Early", 20),
        ("Middle", 30),
        ("Late", 40),
    ]


def test_proposal_writes_rule_and_prompts(tmp_path):
    loader = TabGroupConfigLoader(tmp_path / "TabGroupConfig.json")
    prompts = []
    service = auto_configuration.AutoConfigurationService(loader, prompt=lambda rule, path: prompts.append((rule, path)))
    config = _config(rules=[TabGroupRule("Existing", server="old", priority=5, color_index=0)])

    assert service.propose_new_rule(config, "NEWSQL", "Sales") is True

    saved = json.loads(loader.path.read_text(encoding="utf-8"))
    groups = saved["connectionGroups"]
    assert groups[0] == {"groupName": "Existing", "server": "old", "database": "", "priority": 20, "colorIndex": 0}
    assert groups[1] == {"groupName": "NEWSQL.Sales", "server": "NEWSQL", "database": "Sales", "priority": 10, "colorIndex": 1}
    assert len(prompts) == 1
    assert prompts[0][0].group_name == "NEWSQL.Sales"
    assert prompts[0][1] == loader.path


def test_server_mode_groups_by_server_only(tmp_path):
    loader = TabGroupConfigLoader(tmp_path / "TabGroupConfig.json")
    service = auto_configuration.AutoConfigurationService(loader)
    rule = service.build_rule(_config(mode="server"), "NEWSQL", "Sales")
    assert (rule.group_name, rule.server, rule.database) == ("NEWSQL", "NEWSQL", "%")
    rule = service.build_rule(_config(mode="server db"), "NEWSQL", None)
    assert (rule.group_name, rule.database) == ("NEWSQL", "%")


def test_each_connection_is_proposed_once_until_cleared(tmp_path):
    loader = TabGroupConfigLoader(tmp_path / "TabGroupConfig.json")
    service = auto_configuration.AutoConfigurationService(loader)
    config = _config(prompt=False)

    assert service.propose_new_rule(config, "srv", "db") is True
    assert service.is_suppressed(config, "srv", "db")
    assert service.propose_new_rule(config, "srv", "db") is False
    assert service.propose_new_rule(config, "srv", "other") is True

    service.clear_suppressed()
    assert service.suppressed == set()
    assert not service.is_suppressed(config, "srv", "db")


def test_disabled_or_blank_server_is_ignored(tmp_path):
    loader = TabGroupConfigLoader(tmp_path / "TabGroupConfig.json")
    service = auto_configuration.AutoConfigurationService(loader)
    assert service.propose_new_rule(_config(mode=""), "srv", "db") is False
    assert service.propose_new_rule(_config(mode="None"), "srv", "db") is False
    assert service.propose_new_rule(_config(), "  ", "db") is False
    assert service.propose_new_rule(None, "srv", "db") is False
    assert not loader.path.exists()


def test_matched_connections_are_not_proposed(tmp_path):
    loader = TabGroupConfigLoader(tmp_path / "TabGroupConfig.json")
    service = auto_configuration.AutoConfigurationService(loader)
    config = TabGroupConfig(
        settings=TabGroupSettings(auto_configure="server", enable_configure_prompt=False),
        connection_groups=(TabGroupRule("Prod", server="PROD%"),),
        manual_regex_lines=(ManualRegexEntry("Scratch", r"\\scratch\\"),),
    )

    assert service.propose_new_rule(config, "PRODSQL01", "Orders") is False
    assert service.propose_new_rule(config, "DEVSQL01", "Orders", "C:\\scratch\\q.sql") is False
    assert service.suppressed == set()
    assert not loader.path.exists()

    assert service.propose_new_rule(config, "DEVSQL01", "Orders", "C:\\work\\q.sql") is True
