from __future__ import annotations

import json
import logging
import threading

import pytest

import load
from envtabs_plugin import logging_utils, serial_dispatcher


class _Host:
    def __init__(self):
        self.docs = {}
        self.renames = []
        self.rename_threads = []

    def add(self, doc_id, path, title, server=None, database=None):
        self.docs[doc_id] = {"path": str(path), "title": title, "server": server, "database": database}

    def open_document_ids(self):
        return list(self.docs)

    def document_path(self, doc_id):
        doc = self.docs.get(doc_id)
        return doc["path"] if doc else None

    def resolve_handle(self, doc_id):
        return doc_id if doc_id in self.docs else None

    def read_title(self, handle):
        return self.docs[handle]["title"]

    def read_connection(self, handle):
        doc = self.docs[handle]
        if not doc["server"]:
            return None
        return doc["server"], doc["database"]

    def set_title(self, handle, title):
        self.docs[handle]["title"] = title
        self.renames.append((handle, title))
        self.rename_threads.append(threading.current_thread().name)
        return True

    def title(self, doc_id):
        return self.docs[doc_id]["title"]


def _flush():
    load._plugin.dispatcher.submit(lambda: None, wait=True)


@pytest.fixture
def started(tmp_path):
    host = _Host()
    config_path = tmp_path / "config" / "TabGroupConfig.json"
    load.plugin_start(host, config_path, log_dir=tmp_path / "logs")
    yield host, config_path, tmp_path
    load.plugin_stop()
    logging_utils.set_logging_enabled(True)


def test_logger_uses_plugin_name():
    logger = logging.getLogger(load.PLUGIN_NAME)
    assert logger.name == load.LOGGER_NAME
    assert load.plugin_name == load.PLUGIN_NAME
    assert load.name == load.PLUGIN_NAME
    assert load.version == load.PLUGIN_VERSION


@pytest.mark.parametrize(
    "value, expected",
    [
        ("1", logging.DEBUG),
        ("off", logging.INFO),
    ],
)
def test_debug_env_flag_overrides_level(monkeypatch, value, expected):
    monkeypatch.setenv(load.DEBUG_ENV_VAR, value)
    assert load._resolve_log_level() == expected


def test_unknown_debug_flag_uses_default(monkeypatch):
    monkeypatch.setenv(load.DEBUG_ENV_VAR, "maybe")
    assert load._env_flag(load.DEBUG_ENV_VAR) is None
    assert load._resolve_log_level() == load.DEFAULT_LOG_LEVEL


def test_start_seeds_default_config_and_stamps_version(started):
    _host, config_path, tmp_path = started
    assert load._plugin is not None and load._plugin.running
    payload = json.loads(config_path.read_text(encoding="utf-8"))
    assert payload["version"] == load.PLUGIN_VERSION
    assert payload["settings"]["autoConfigure"] == "server db"
    assert (tmp_path / "logs" / logging_utils.LOG_DIR_NAME / logging_utils.RUNTIME_LOG_FILE_NAME).exists()


def test_second_start_keeps_running_instance(started):
    host, config_path, _tmp_path = started
    runtime = load._plugin
    assert load.plugin_start(host, config_path) == load.PLUGIN_NAME
    assert load._plugin is runtime


def test_hooks_run_on_dispatch_thread(started):
    host, config_path, tmp_path = started
    payload = json.loads(config_path.read_text(encoding="utf-8"))
    payload["settings"]["autoConfigure"] = ""
    payload["connectionGroups"] = [{"groupName": "Prod", "server": "PROD%", "priority": 10, "colorIndex": 3}]
    config_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    load.config_file_changed()
    _flush()
    load._plugin.dispatcher.submit(load._plugin.orchestrator.reload_and_apply, wait=True)

    host.add("d1", tmp_path / "SQLQuery1.sql", "SQLQuery1.sql", "PRODSQL01", "Orders")
    load.document_shown("d1")
    _flush()

    assert len(host.renames) == 1
    assert "Prod" in host.title("d1")
    assert host.rename_threads == [serial_dispatcher.THREAD_NAME]


def test_hooks_are_ignored_when_stopped():
    load.plugin_stop()
    assert load._plugin is None
    load.document_shown("d1")
    load.first_lock("d1")
    load.attribute_changed("d1", extended=True)
    load.connection_event("d1")
    load.active_frame_changed("d1")
    load.last_reference_released("d1")
    load.after_save("d1")
    load.config_file_changed()
    load.rule_dialog_closed(False)
    assert load._plugin is None


def test_stop_releases_runtime_and_log_handler(started):
    runtime = load._plugin
    handler = runtime._log_handler
    assert handler in logging.getLogger(load.LOGGER_NAME).handlers

    load.plugin_stop()

    assert load._plugin is None
    assert not runtime.running
    assert not runtime.dispatcher.running
    assert handler not in logging.getLogger(load.LOGGER_NAME).handlers
    load.plugin_stop()
