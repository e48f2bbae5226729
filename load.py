"""Primary entry point for the EnvTabs tab grouping plugin."""
from __future__ import annotations

import concurrent.futures
import functools
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Optional

if __package__:
    from .version import __version__ as ENVTABS_VERSION, DEV_MODE_ENV_VAR, is_dev_build
    from .envtabs_plugin.auto_configuration import AutoConfigurationService, PromptCallback
    from .envtabs_plugin.change_orchestrator import ChangeOrchestrator, ColorConflictCallback
    from .envtabs_plugin.color_config_writer import ColorConfigWriter
    from .envtabs_plugin.config_loader import TabGroupConfigLoader
    from .envtabs_plugin.host_interface import DocId, EditorHost
    from .envtabs_plugin.logging_utils import (
        ROOT_LOGGER_NAME,
        build_rotating_file_handler,
        resolve_logs_dir,
        set_base_level,
    )
    from .envtabs_plugin.serial_dispatcher import SerialDispatcher
    from .envtabs_plugin.tab_renamer import TabRenamer
else:  # pragma: no cover - host loads as top-level module
    from version import __version__ as ENVTABS_VERSION, DEV_MODE_ENV_VAR, is_dev_build
    from envtabs_plugin.auto_configuration import AutoConfigurationService, PromptCallback
    from envtabs_plugin.change_orchestrator import ChangeOrchestrator, ColorConflictCallback
    from envtabs_plugin.color_config_writer import ColorConfigWriter
    from envtabs_plugin.config_loader import TabGroupConfigLoader
    from envtabs_plugin.host_interface import DocId, EditorHost
    from envtabs_plugin.logging_utils import (
        ROOT_LOGGER_NAME,
        build_rotating_file_handler,
        resolve_logs_dir,
        set_base_level,
    )
    from envtabs_plugin.serial_dispatcher import SerialDispatcher
    from envtabs_plugin.tab_renamer import TabRenamer

PLUGIN_NAME = "EnvTabs"
PLUGIN_VERSION = ENVTABS_VERSION
DEV_BUILD = is_dev_build(ENVTABS_VERSION)
LOGGER_NAME = ROOT_LOGGER_NAME
LOG_TAG = PLUGIN_NAME
DEBUG_ENV_VAR = "ENVTABS_DEBUG"
DEFAULT_LOG_LEVEL = logging.DEBUG if DEV_BUILD else logging.INFO
STOP_TIMEOUT_SECONDS = 2.0


def _env_flag(name: str) -> Optional[bool]:
    """Parse a boolean environment flag, returning None when unset/invalid."""
    value = os.environ.get(name)
    if value is None:
        return None
    token = value.strip().lower()
    if token in {"1", "true", "yes", "on"}:
        return True
    if token in {"0", "false", "no", "off"}:
        return False
    return None


def _resolve_log_level() -> int:
    override = _env_flag(DEBUG_ENV_VAR)
    if override is True:
        return logging.DEBUG
    if override is False:
        return logging.INFO
    return DEFAULT_LOG_LEVEL


def _log_formatter() -> logging.Formatter:
    return logging.Formatter(f"[%(asctime)s] [{LOG_TAG}] %(levelname)s %(message)s", "%H:%M:%S")


def _configure_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    set_base_level(_resolve_log_level())
    if not any(getattr(handler, "_envtabs_handler", False) for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler._envtabs_handler = True  # type: ignore[attr-defined]
        handler.setFormatter(_log_formatter())
        logger.addHandler(handler)
    logger.propagate = False
    return logger


LOGGER = _configure_logger()
if DEV_BUILD:
    LOGGER.info(
        "Running EnvTabs dev build (%s); override via %s=0 to force release behaviour.",
        ENVTABS_VERSION,
        DEV_MODE_ENV_VAR,
    )


class _EnvTabsRuntime:
    """Owns the engine objects for one plugin session."""

    def __init__(
        self,
        host: EditorHost,
        config_path: Optional[Path] = None,
        *,
        log_dir: Optional[Path] = None,
        configure_prompt: Optional[PromptCallback] = None,
        color_conflict: Optional[ColorConflictCallback] = None,
    ) -> None:
        self.host = host
        self.dispatcher = SerialDispatcher()
        self.loader = TabGroupConfigLoader(config_path)
        self.writer = ColorConfigWriter(scheduler=self.dispatcher.call_later)
        self.renamer = TabRenamer(host.set_title)
        self.auto_config = AutoConfigurationService(self.loader, prompt=configure_prompt)
        self.orchestrator = ChangeOrchestrator(
            host,
            self.loader,
            self.writer,
            self.renamer,
            self.auto_config,
            self.dispatcher,
            color_conflict=color_conflict,
        )
        self._log_dir = log_dir
        self._log_handler: Optional[logging.Handler] = None
        self._lock = threading.Lock()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # Lifecycle ------------------------------------------------------------

    def start(self) -> str:
        with self._lock:
            if self._running:
                return PLUGIN_NAME
            self._running = True
        self._attach_log_handler()
        self.loader.ensure_default_config_exists()
        config = self.loader.load_or_none()
        if config is not None:
            self.loader.update_version_if_needed(config, PLUGIN_VERSION)
        self.dispatcher.start()
        self.dispatcher.submit(self.orchestrator.start, wait=True, timeout=STOP_TIMEOUT_SECONDS)
        LOGGER.info("Plugin started (version=%s config=%s)", PLUGIN_VERSION, self.loader.path)
        return PLUGIN_NAME

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
        LOGGER.info("Plugin stopping")
        try:
            self.dispatcher.submit(self.orchestrator.stop, wait=True, timeout=STOP_TIMEOUT_SECONDS)
        except concurrent.futures.TimeoutError:
            LOGGER.warning("Orchestrator did not stop within %.1fs", STOP_TIMEOUT_SECONDS)
        self.dispatcher.stop(timeout=STOP_TIMEOUT_SECONDS)
        self._detach_log_handler()

    # Host events ----------------------------------------------------------

    def document_shown(self, doc_id: DocId) -> None:
        self._post(self.orchestrator.on_document_shown, doc_id)

    def first_lock(self, doc_id: DocId) -> None:
        self._post(self.orchestrator.on_first_lock, doc_id)

    def attribute_changed(self, doc_id: DocId, extended: bool = False) -> None:
        self._post(self.orchestrator.on_attribute_changed, doc_id, extended)

    def connection_event(self, doc_id: DocId) -> None:
        self._post(self.orchestrator.on_connection_event, doc_id)

    def active_frame_changed(self, doc_id: DocId) -> None:
        self._post(self.orchestrator.on_active_frame_changed, doc_id)

    def last_reference_released(self, doc_id: DocId) -> None:
        self._post(self.orchestrator.on_last_reference_released, doc_id)

    def after_save(self, doc_id: DocId) -> None:
        self._post(self.orchestrator.on_after_save, doc_id)

    def config_file_changed(self) -> None:
        self._post(self.orchestrator.on_config_file_changed)

    def rule_dialog_closed(self, changes_applied: bool) -> None:
        self._post(self.orchestrator.on_rule_dialog_closed, changes_applied)

    def _post(self, func: Callable[..., Any], *args: Any) -> None:
        if not self._running:
            return
        self.dispatcher.submit(functools.partial(func, *args))

    # Logging --------------------------------------------------------------

    def _attach_log_handler(self) -> None:
        try:
            log_dir = resolve_logs_dir(self._log_dir)
            handler = build_rotating_file_handler(log_dir, formatter=_log_formatter())
        except OSError as exc:
            LOGGER.warning("Failed to initialise runtime log: %s", exc)
            return
        logging.getLogger(LOGGER_NAME).addHandler(handler)
        self._log_handler = handler
        LOGGER.debug("Runtime log initialised in %s", log_dir)

    def _detach_log_handler(self) -> None:
        handler = self._log_handler
        if handler is None:
            return
        logging.getLogger(LOGGER_NAME).removeHandler(handler)
        handler.close()
        self._log_handler = None


# Host hook functions ------------------------------------------------------

_plugin: Optional[_EnvTabsRuntime] = None


def plugin_start(
    host: EditorHost,
    config_path: Optional[Path] = None,
    *,
    log_dir: Optional[Path] = None,
    configure_prompt: Optional[PromptCallback] = None,
    color_conflict: Optional[ColorConflictCallback] = None,
) -> str:
    """Host entrypoint: initialise the plugin and start the runtime once."""
    global _plugin
    if _plugin is not None and _plugin.running:
        return PLUGIN_NAME
    LOGGER.info("Initialising EnvTabs %s", PLUGIN_VERSION)
    _plugin = _EnvTabsRuntime(
        host,
        config_path,
        log_dir=log_dir,
        configure_prompt=configure_prompt,
        color_conflict=color_conflict,
    )
    return _plugin.start()


def plugin_stop() -> None:
    """Host entrypoint: stop the plugin safely; idempotent if not running."""
    global _plugin
    if _plugin:
        try:
            _plugin.stop()
        finally:
            _plugin = None


def document_shown(doc_id: DocId) -> None:
    if _plugin:
        _plugin.document_shown(doc_id)


def first_lock(doc_id: DocId) -> None:
    if _plugin:
        _plugin.first_lock(doc_id)


def attribute_changed(doc_id: DocId, extended: bool = False) -> None:
    if _plugin:
        _plugin.attribute_changed(doc_id, extended)


def connection_event(doc_id: DocId) -> None:
    if _plugin:
        _plugin.connection_event(doc_id)


def active_frame_changed(doc_id: DocId) -> None:
    if _plugin:
        _plugin.active_frame_changed(doc_id)


def last_reference_released(doc_id: DocId) -> None:
    if _plugin:
        _plugin.last_reference_released(doc_id)


def after_save(doc_id: DocId) -> None:
    if _plugin:
        _plugin.after_save(doc_id)


def config_file_changed() -> None:
    if _plugin:
        _plugin.config_file_changed()


def rule_dialog_closed(changes_applied: bool) -> None:
    if _plugin:
        _plugin.rule_dialog_closed(changes_applied)


# Metadata expected by some plugin loaders
name = PLUGIN_NAME
plugin_name = PLUGIN_NAME
version = PLUGIN_VERSION
