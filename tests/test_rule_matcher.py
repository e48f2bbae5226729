from __future__ import annotations

import pytest

from envtabs_plugin import rule_matcher
from envtabs_plugin.config_models import ManualRegexEntry, TabGroupConfig, TabGroupRule


def _config(*rules, manual=()):
    return TabGroupConfig(connection_groups=tuple(rules), manual_regex_lines=tuple(manual))


def test_rules_sorted_by_priority_then_name():
    config = _config(
        TabGroupRule("Zulu", server="srv", priority=5),
        TabGroupRule("alpha", server="srv", priority=5),
        TabGroupRule("First", server="srv", priority=1),
    )
    compiled = rule_matcher.compile_rules(config)
    assert [rule.group_name for rule in compiled] == ["First", "alpha", "Zulu"]


def test_rules_without_patterns_or_name_are_skipped():
    config = _config(
        TabGroupRule("", server="srv"),
        TabGroupRule("Empty", server="  ", database=""),
        TabGroupRule("Kept", database="db"),
    )
    compiled = rule_matcher.compile_rules(config)
    assert [rule.group_name for rule in compiled] == ["Kept"]


def test_compile_rules_handles_missing_config():
    assert rule_matcher.compile_rules(None) == []
    assert rule_matcher.compile_manual_rules(None) == []


@pytest.mark.parametrize(
    "pattern, value, expected",
    [
        ("PROD-SQL", "prod-sql", True),
        ("PROD-SQL", "prod-sql2", False),
        ("%prod%", "app-prod-01", True),
        ("%prod%", "staging", False),
        ("sql%", "SQL01", True),
        ("%.internal", "db.internal", True),
        ("%.internal", "dbXinternal", False),
        ("a%b%c", "a--b--c", True),
    ],
)
def test_like_pattern_matching(pattern, value, expected):
    rule = rule_matcher.compile_rules(_config(TabGroupRule("G", server=pattern)))[0]
    assert rule.matches(value, None) is expected


def test_empty_actual_value_never_matches_a_pattern():
    rule = rule_matcher.compile_rules(_config(TabGroupRule("G", server="%", database="%")))[0]
    assert rule.matches("srv", "db") is True
    assert rule.matches("srv", "") is False
    assert rule.matches(None, "db") is False


def test_empty_pattern_is_ignored_when_matching():
    rule = rule_matcher.compile_rules(_config(TabGroupRule("G", server="srv", database="")))[0]
    assert rule.matches("SRV", None) is True
    assert rule.database_pattern == ""
    assert rule.server_pattern == "srv"


def test_first_match_wins_in_priority_order():
    rules = rule_matcher.compile_rules(
        _config(
            TabGroupRule("Catch-all", server="%", priority=100),
            TabGroupRule("Prod", server="prod%", priority=10),
        )
    )
    assert rule_matcher.match_group(rules, "prod01", "db") == "Prod"
    assert rule_matcher.match_group(rules, "dev01", "db") == "Catch-all"
    assert rule_matcher.match_group(rules, None, None) is None
    assert rule_matcher.match_rule([], "prod01", "db") is None


def test_manual_rules_keep_file_order_for_equal_priority():
    config = _config(
        manual=(
            ManualRegexEntry("Second", r"reports", priority=50),
            ManualRegexEntry("First", r"\\adhoc\\", priority=10),
            ManualRegexEntry("Third", r"report", priority=50),
        )
    )
    compiled = rule_matcher.compile_manual_rules(config)
    assert [rule.group_name for rule in compiled] == ["First", "Second", "Third"]
    match = rule_matcher.match_manual(compiled, r"C:\Work\Reports\daily.sql")
    assert match is not None and match.group_name == "Second"


def test_invalid_manual_regex_is_dropped():
    config = _config(
        manual=(
            ManualRegexEntry("Broken", r"([unclosed"),
            ManualRegexEntry("Good", r"\.sql$"),
        )
    )
    compiled = rule_matcher.compile_manual_rules(config)
    assert [rule.group_name for rule in compiled] == ["Good"]
    assert rule_matcher.match_manual(compiled, "") is None
    assert rule_matcher.match_manual(compiled, "/tmp/query.SQL") is compiled[0]
