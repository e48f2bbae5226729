from __future__ import annotations

import pytest

from envtabs_plugin import tab_renamer
from envtabs_plugin.config_models import ManualRegexEntry, TabGroupConfig, TabGroupRule
from envtabs_plugin.host_interface import DocumentSnapshot
from envtabs_plugin.rule_matcher import compile_manual_rules, compile_rules

TEMP_ROOT = "C:\\Temp"
SESSION = TEMP_ROOT + "\\ABCDEF12-3456-7890-ABCD-EF1234567890"


class _TitleSink:
    def __init__(self, result: bool = True):
        self.result = result
        self.calls = []

    def __call__(self, handle, title):
        self.calls.append((handle, title))
        return self.result


def _config(**extra):
    return TabGroupConfig(
        connection_groups=(
            TabGroupRule("Prod", server="PROD%", priority=10, color_index=3),
            TabGroupRule("Dev", server="DEV%", priority=20, color_index=5),
        ),
        **extra,
    )


def _temp_doc(number: int, server="PRODSQL01", database="Orders", title=None):
    name = f"SQLQuery{number}.sql"
    return DocumentSnapshot(
        doc_id=f"doc{number}",
        title=title or name,
        path=f"{SESSION}\\{name}",
        server=server,
        database=database,
        handle=f"frame{number}",
    )


def _renamer(sink):
    return tab_renamer.TabRenamer(sink, temp_root=TEMP_ROOT)


def test_scenario_new_query_gets_group_title():
    sink = _TitleSink()
    renamer = _renamer(sink)
    renamed = renamer.apply_renames([_temp_doc(3)], compile_rules(_config()))
    assert renamed == 1
    assert sink.calls == [("frame3", "Prod1")]


def test_sequence_numbers_are_never_reused():
    sink = _TitleSink()
    renamer = _renamer(sink)
    rules = compile_rules(_config())
    renamer.apply_renames([_temp_doc(1), _temp_doc(2), _temp_doc(3)], rules)
    assert [title for _handle, title in sink.calls] == ["Prod1", "Prod2", "Prod3"]

    renamer.forget("doc1")
    renamer.apply_renames([_temp_doc(4)], rules)
    assert sink.calls[-1] == ("frame4", "Prod4")


def test_sequence_numbers_are_per_group():
    sink = _TitleSink()
    renamer = _renamer(sink)
    rules = compile_rules(_config())
    renamer.apply_renames([_temp_doc(1), _temp_doc(2, server="DEVSQL"), _temp_doc(3)], rules)
    assert [title for _handle, title in sink.calls] == ["Prod1", "Dev1", "Prod2"]


def test_document_keeps_number_while_group_unchanged():
    sink = _TitleSink()
    renamer = _renamer(sink)
    rules = compile_rules(_config())
    renamer.apply_renames([_temp_doc(1)], rules)
    renamer.apply_renames([_temp_doc(1, title="SQLQuery1.sql")], rules)
    assert [title for _handle, title in sink.calls] == ["Prod1", "Prod1"]
    assert renamer.store.get("doc1") == tab_renamer.TabAssignment("Prod", 1)


def test_moving_to_another_group_takes_a_new_number():
    sink = _TitleSink()
    renamer = _renamer(sink)
    rules = compile_rules(_config())
    renamer.apply_renames([_temp_doc(1)], rules)
    renamer.apply_renames([_temp_doc(1, server="DEV01", title="Prod1")], rules)
    assert sink.calls[-1] == ("frame1", "Dev1")


def test_title_already_applied_skips_host_call():
    sink = _TitleSink()
    renamer = _renamer(sink)
    rules = compile_rules(_config())
    renamer.apply_renames([_temp_doc(1)], rules)
    assert renamer.apply_renames([_temp_doc(1, title="Prod1 - PRODSQL01.Orders (sa)")], rules) == 0
    assert len(sink.calls) == 1


def test_unmatched_or_unreachable_documents_are_left_alone():
    sink = _TitleSink()
    renamer = _renamer(sink)
    rules = compile_rules(_config())
    unreachable = DocumentSnapshot("doc9", "SQLQuery9.sql", f"{SESSION}\\SQLQuery9.sql", "PROD1", "db", None)
    assert renamer.apply_renames([_temp_doc(1, server="QA01"), unreachable], rules) == 0
    assert sink.calls == []


def test_failed_host_rename_is_not_counted():
    sink = _TitleSink(result=False)
    renamer = _renamer(sink)
    assert renamer.apply_renames([_temp_doc(1)], compile_rules(_config())) == 0
    assert sink.calls == [("frame1", "Prod1")]


def test_saved_file_uses_saved_style_and_server_alias():
    config = _config(server_alias={"prodsql01": "Primary"})
    config = config.with_settings(saved_file_rename_style="[filename] ([server]/[db])")
    sink = _TitleSink()
    renamer = _renamer(sink)
    doc = DocumentSnapshot("saved", "report.sql", "D:\\Work\\report.sql", "PRODSQL01", "Orders", "frameS")
    renamer.apply_renames(
        [doc],
        compile_rules(config),
        saved_style=config.settings.saved_file_rename_style,
        aliases=config.alias_for,
    )
    assert sink.calls == [("frameS", "report (Primary/Orders)")]


def test_manual_rule_match_uses_group_name_as_title():
    config = _config(manual_regex_lines=(ManualRegexEntry("Scratch", r"\\scratch\\", priority=1),))
    sink = _TitleSink()
    renamer = _renamer(sink)
    doc = DocumentSnapshot("m", "notes.sql", "D:\\scratch\\notes.sql", None, None, "frameM")
    renamer.apply_renames([doc], compile_rules(config), compile_manual_rules(config))
    assert sink.calls == [("frameM", "Scratch")]


@pytest.mark.parametrize(
    "title, path, expected",
    [
        ("SQLQuery12.sql", None, True),
        ("sqlquery1.sql - server.db", "D:\\x\\other.sql", True),
        ("Renamed", SESSION + "\\SQLQuery1.sql", True),
        ("Renamed", SESSION + "\\notes.txt", False),
        ("report.sql", "D:\\Work\\report.sql", True),
        ("My Report", "D:\\Work\\report.sql", False),
        ("Something", None, False),
    ],
)
def test_rename_eligibility(title, path, expected):
    assert tab_renamer.is_rename_eligible(title, path, TEMP_ROOT) is expected


def test_compose_title_substitutes_tokens_once():
    assert tab_renamer.compose_title("[groupName][#]", "A#B", 2) == "A#B2"
    assert tab_renamer.compose_title("[groupName] #", "Prod", 7) == "Prod 7"
    assert tab_renamer.compose_title("[filename]  [groupName] [db]", "Prod", 1, file_name="") == "Prod"
    assert (
        tab_renamer.compose_title("[server].[db]", "G", 1, server="srv", database="app") == "srv.app"
    )


def test_title_already_applied():
    assert tab_renamer.title_already_applied("prod1", "Prod1")
    assert tab_renamer.title_already_applied("Prod1 (sa)", "Prod1")
    assert not tab_renamer.title_already_applied("Prod10", "Prod1")
    assert not tab_renamer.title_already_applied(None, "Prod1")
