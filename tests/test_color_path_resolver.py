from __future__ import annotations

import os
import time
import uuid

import pytest

from envtabs_plugin import color_path_resolver
from envtabs_plugin.color_path_resolver import COLOR_CONFIG_FILE_NAME, ColorConfigPathResolver


class _Clock:
    def __init__(self, start: float):
        self.now = start

    def __call__(self) -> float:
        return self.now


def _guid_folder(root, with_version=True, with_config=True):
    folder = root / str(uuid.uuid4())
    folder.mkdir(parents=True)
    if with_version:
        (folder / "v1").mkdir()
    if with_config:
        (folder / COLOR_CONFIG_FILE_NAME).write_text("", encoding="utf-8")
    return folder


@pytest.mark.parametrize(
    "name, expected",
    [
        ("6F9619FF-8B86-D011-B42D-00C04FC964FF", True),
        ("{6F9619FF-8B86-D011-B42D-00C04FC964FF}", True),
        ("not-a-guid", False),
        ("", False),
    ],
)
def test_is_guid_name(name, expected):
    assert color_path_resolver.is_guid_name(name) is expected


def test_is_version_folder_name():
    assert color_path_resolver.is_version_folder_name("v1")
    assert color_path_resolver.is_version_folder_name("v22")
    assert not color_path_resolver.is_version_folder_name("v")
    assert not color_path_resolver.is_version_folder_name("va")
    assert not color_path_resolver.is_version_folder_name("V1")


def test_resolves_from_document_inside_temp_guid_folder(tmp_path):
    folder = _guid_folder(tmp_path)
    resolver = ColorConfigPathResolver(temp_root=tmp_path)
    doc = folder / "a" / "b" / "c" / "d" / "SQLQuery1.sql"
    assert resolver.resolve([str(doc)]) == folder / COLOR_CONFIG_FILE_NAME
    assert resolver.resolved_path == folder / COLOR_CONFIG_FILE_NAME


def test_ancestor_walk_is_limited(tmp_path):
    project = tmp_path / "project"
    (project / "one" / "two").mkdir(parents=True)
    (project / COLOR_CONFIG_FILE_NAME).write_text("", encoding="utf-8")
    resolver = ColorConfigPathResolver(temp_root=tmp_path / "temp")

    near = project / "one" / "two" / "q.sql"
    assert resolver.resolve_from_document(str(near)) == project / COLOR_CONFIG_FILE_NAME

    far = project / "one" / "two" / "three" / "four" / "q.sql"
    assert resolver.resolve_from_document(str(far)) is None


def test_relative_or_missing_paths_are_ignored(tmp_path):
    resolver = ColorConfigPathResolver(temp_root=tmp_path)
    assert resolver.resolve_from_document("SQLQuery1.sql") is None
    assert resolver.resolve_from_document(None) is None


def test_cached_path_is_revalidated(tmp_path):
    folder = _guid_folder(tmp_path)
    resolver = ColorConfigPathResolver(temp_root=tmp_path, clock=_Clock(0.0))
    doc = str(folder / "q.sql")
    config = resolver.resolve([doc])
    assert config is not None

    config.unlink()
    assert resolver.resolve([]) is None
    assert resolver.resolved_path is None


def test_temp_scan_needs_document_sighting_and_version_folder(tmp_path):
    clock = _Clock(time.time())
    resolver = ColorConfigPathResolver(temp_root=tmp_path, clock=clock)
    _guid_folder(tmp_path, with_version=False)
    assert resolver.scan_temp_root() is None

    resolver.note_documents_seen(1)
    assert resolver.first_doc_seen == clock.now
    assert resolver.scan_temp_root() is None

    good = _guid_folder(tmp_path)
    assert resolver.scan_temp_root() == good / COLOR_CONFIG_FILE_NAME


def test_temp_scan_skips_folders_outside_creation_window(tmp_path):
    clock = _Clock(time.time() + color_path_resolver.CREATION_SKEW_SECONDS + 600)
    resolver = ColorConfigPathResolver(temp_root=tmp_path, clock=clock)
    resolver.note_documents_seen(2)
    _guid_folder(tmp_path)
    assert resolver.scan_temp_root() is None


def test_temp_scan_is_rate_limited(tmp_path, monkeypatch):
    clock = _Clock(1000.0)
    resolver = ColorConfigPathResolver(temp_root=tmp_path, clock=clock)
    scans = []
    monkeypatch.setattr(resolver, "scan_temp_root", lambda: scans.append(clock.now))

    resolver.resolve([])
    resolver.resolve([])
    clock.now += color_path_resolver.TEMP_SCAN_BACKOFF_SECONDS
    resolver.resolve([])

    assert scans == [1000.0, 1000.0 + color_path_resolver.TEMP_SCAN_BACKOFF_SECONDS]


def test_foreign_rooted_path_never_searches_working_directory(tmp_path, monkeypatch):
    (tmp_path / COLOR_CONFIG_FILE_NAME).write_text("", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    resolver = ColorConfigPathResolver(temp_root=tmp_path / "temp")
    foreign = "/srv/queries/SQLQuery1.sql" if os.name == "nt" else "C:\\Temp\\Queries\\SQLQuery1.sql"

    assert resolver.resolve_from_document(foreign) is None
    assert resolver.resolve([foreign]) is None
