"""Decide what to do when something about an open query tab may have changed.

Every entry point here is expected to run on the dispatcher thread; the
orchestrator keeps no locks of its own. Host callbacks post onto the
dispatcher, and every delayed follow-up (rename retries, debounces, the poll
loop) is scheduled through ``dispatcher.call_later`` so it lands back on the
same thread.
"""
from __future__ import annotations

import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from envtabs_plugin.auto_configuration import AutoConfigurationService
from envtabs_plugin.color_config_writer import ColorConfigWriter, SyncResult
from envtabs_plugin.config_loader import ConfigSignature, TabGroupConfigLoader
from envtabs_plugin.config_models import TabGroupConfig
from envtabs_plugin.group_color_overrides import ColorMapSignature, color_map_signature
from envtabs_plugin.host_interface import (
    DocId,
    DocumentSnapshot,
    EditorHost,
    TriggerReason,
    is_query_path,
    parse_caption_connection,
)
from envtabs_plugin.logging_utils import set_logging_enabled
from envtabs_plugin.rule_matcher import (
    CompiledManualRule,
    CompiledRule,
    compile_manual_rules,
    compile_rules,
    match_group,
    match_manual,
    match_rule,
)
from envtabs_plugin.tab_renamer import TabRenamer

LOGGER = logging.getLogger("EnvTabs.Orchestrator")

RENAME_RETRY_COUNT = 20
RENAME_RETRY_DELAY_SECONDS = 0.25
CONNECTION_EVENT_DELAY_SECONDS = 0.2
CONFIG_DEBOUNCE_SECONDS = 0.5
GROUP_COLOR_DEBOUNCE_SECONDS = 0.5
POLL_INTERVAL_SECONDS = 2.0
DIALOG_COLOR_SUPPRESSION_SECONDS = 2.0

Connection = Tuple[Optional[str], Optional[str]]
ColorConflictCallback = Callable[[str, int], None]


class Dispatcher(Protocol):
    def submit(self, func: Callable[[], Any]) -> Any: ...
    def call_later(self, delay: float, func: Callable[[], Any]) -> Any: ...


class ChangeOrchestrator:
    """Turns host events into renames, colour syncs and auto-configured rules."""

    def __init__(
        self,
        host: EditorHost,
        loader: TabGroupConfigLoader,
        writer: ColorConfigWriter,
        renamer: TabRenamer,
        auto_config: AutoConfigurationService,
        dispatcher: Dispatcher,
        clock: Callable[[], float] = time.monotonic,
        color_conflict: Optional[ColorConflictCallback] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._host = host
        self._loader = loader
        self._writer = writer
        self._renamer = renamer
        self._auto_config = auto_config
        self._dispatcher = dispatcher
        self._clock = clock
        self._color_conflict = color_conflict
        self._logger = logger or LOGGER

        self._config: Optional[TabGroupConfig] = None
        self._config_signature: Optional[ConfigSignature] = None
        self._rules: List[CompiledRule] = []
        self._manual_rules: List[CompiledManualRule] = []

        self._last_connections: Dict[DocId, Connection] = {}
        self._retry_attempts: Dict[DocId, int] = {}
        self._suppress_colors_until = 0.0

        self._watched_config_signature: Optional[ConfigSignature] = None
        self._config_generation = 0
        self._config_debounce: Any = None

        self._color_map_dir: Optional[Path] = None
        self._color_map_signature: Optional[ColorMapSignature] = None
        self._color_map_generation = 0
        self._color_map_debounce: Any = None

        self._poll_handle: Any = None
        self._running = False

        writer.set_path_resolved_callback(self.on_color_config_path_resolved)

    @property
    def rules(self) -> List[CompiledRule]:
        return list(self._rules)

    @property
    def manual_rules(self) -> List[CompiledManualRule]:
        return list(self._manual_rules)

    @property
    def running(self) -> bool:
        return self._running

    # Lifecycle ----------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._watched_config_signature = self._loader.current_signature()
        self.load_config()
        self._schedule_poll()

    def stop(self) -> None:
        self._running = False
        for handle in (self._poll_handle, self._config_debounce, self._color_map_debounce):
            if handle is not None:
                handle.cancel()
        self._poll_handle = None
        self._config_debounce = None
        self._color_map_debounce = None
        self._retry_attempts.clear()

    # Configuration ------------------------------------------------------

    def load_config(self) -> Optional[TabGroupConfig]:
        """Return the cached config, re-reading it when the file changed on disk."""

        signature = self._loader.current_signature()
        if self._config_signature is not None and signature == self._config_signature:
            return self._config
        config = self._loader.load_or_none()
        self._config = config
        self._config_signature = signature
        self._rules = compile_rules(config)
        self._manual_rules = compile_manual_rules(config)
        if config is None:
            self._logger.info("No usable config at %s", self._loader.path)
            return None
        set_logging_enabled(config.settings.enable_logging)
        settings = config.settings
        self._logger.info(
            "Config loaded: rules=%s manual=%s autoRename=%s autoColor=%s polling=%s",
            len(self._rules),
            len(self._manual_rules),
            settings.enable_auto_rename,
            settings.enable_auto_color,
            settings.enable_connection_polling,
        )
        return config

    def reset_config(self) -> None:
        self._config = None
        self._config_signature = None
        self._rules = []
        self._manual_rules = []

    # Snapshots ----------------------------------------------------------

    def snapshot_documents(self) -> List[DocumentSnapshot]:
        """Describe every open ``.sql`` document whose window can be reached."""

        documents: List[DocumentSnapshot] = []
        for doc_id in self._host.open_document_ids():
            path = self._host.document_path(doc_id)
            if not is_query_path(path):
                continue
            handle = self._host.resolve_handle(doc_id)
            if handle is None:
                continue
            documents.append(self._describe(doc_id, handle, path))
        return documents

    def _describe(self, doc_id: DocId, handle: Any, path: Optional[str]) -> DocumentSnapshot:
        title = self._host.read_title(handle)
        connection = self._read_connection(handle, title)
        server, database = connection if connection is not None else (None, None)
        return DocumentSnapshot(doc_id, title, path, server, database, handle)

    def _read_connection(self, handle: Any, title: Optional[str]) -> Optional[Connection]:
        connection = self._host.read_connection(handle)
        if connection is not None and connection[0] and connection[0].strip():
            return connection
        return parse_caption_connection(title)

    # Core decision ------------------------------------------------------

    def handle_potential_change(self, doc_id: DocId, handle: Any, reason: TriggerReason) -> bool:
        """Process one document; return False when a retry is needed."""

        config = self.load_config()
        if config is None:
            return True
        path = self._host.document_path(doc_id)
        if path and not is_query_path(path):
            return True

        settings = config.settings
        doc = self._describe(doc_id, handle, path)
        needs_retry = False
        renamed = 0

        if settings.enable_auto_rename:
            eligible = reason.forces_rename_check or self._renamer.is_eligible(doc)
            if eligible and not doc.has_connection:
                needs_retry = True
            elif eligible:
                renamed = self._renamer.apply_renames(
                    [doc],
                    self._rules,
                    self._manual_rules,
                    settings.new_query_rename_style,
                    settings.saved_file_rename_style,
                    config.alias_for,
                )

        auto_configured = False
        if doc.has_connection:
            self._last_connections[doc_id] = (doc.server, doc.database)
            auto_configured = self._maybe_auto_configure(config, doc)

        self._logger.debug(
            "Change doc=%s reason=%s title='%s' server=%s db=%s renamed=%s retry=%s",
            doc_id,
            reason.value,
            doc.title,
            doc.server,
            doc.database,
            renamed,
            needs_retry,
        )

        if not needs_retry and (renamed > 0 or reason.is_connection_event or auto_configured):
            self.update_color_only(reason.value)
        return not needs_retry

    def _maybe_auto_configure(self, config: TabGroupConfig, doc: DocumentSnapshot) -> bool:
        if not config.settings.auto_configure_enabled:
            return False
        if match_rule(self._rules, doc.server, doc.database) is not None:
            return False
        if match_manual(self._manual_rules, doc.path) is not None:
            return False
        if self._auto_config.is_suppressed(config, doc.server, doc.database):
            return False
        server, database, path = doc.server, doc.database, doc.path
        self._dispatcher.submit(lambda: self._propose_rule(server, database, path))
        return True

    def _propose_rule(self, server: Optional[str], database: Optional[str], path: Optional[str]) -> None:
        # Earlier queued proposals may have saved since this one was queued.
        config = self.load_config()
        if config is None:
            return
        if self._auto_config.propose_new_rule(config, server, database, path):
            self.on_config_file_changed()

    # Rename retries -----------------------------------------------------

    def schedule_rename_retry(self, doc_id: DocId, reason: TriggerReason) -> None:
        if doc_id in self._retry_attempts:
            return
        self._retry_attempts[doc_id] = 0
        self._dispatcher.call_later(RENAME_RETRY_DELAY_SECONDS, lambda: self._run_rename_retry(doc_id, reason))

    def _run_rename_retry(self, doc_id: DocId, reason: TriggerReason) -> None:
        attempts = self._retry_attempts.get(doc_id)
        if attempts is None:
            return
        attempt = attempts + 1
        self._retry_attempts[doc_id] = attempt

        done = False
        path = self._host.document_path(doc_id)
        if path and not is_query_path(path):
            done = True
        elif path:
            handle = self._host.resolve_handle(doc_id)
            if handle is not None:
                done = self.handle_potential_change(doc_id, handle, reason)

        if done or attempt >= RENAME_RETRY_COUNT:
            if not done:
                self._logger.info("Rename retries exhausted doc=%s reason=%s", doc_id, reason.value)
            self._retry_attempts.pop(doc_id, None)
            return
        self._dispatcher.call_later(RENAME_RETRY_DELAY_SECONDS, lambda: self._run_rename_retry(doc_id, reason))

    # Host events --------------------------------------------------------

    def on_document_shown(self, doc_id: DocId) -> None:
        self._handle_event(doc_id, TriggerReason.DOCUMENT_SHOWN)

    def on_first_lock(self, doc_id: DocId) -> None:
        self._handle_event(doc_id, TriggerReason.FIRST_LOCK)

    def on_attribute_changed(self, doc_id: DocId, extended: bool = False) -> None:
        if extended:
            self._handle_event(doc_id, TriggerReason.ATTRIBUTE_CHANGE_EX)
            return
        self._handle_event(doc_id, TriggerReason.ATTRIBUTE_CHANGE)
        # The caption can lag the attribute change; look again shortly.
        self.schedule_rename_retry(doc_id, TriggerReason.ATTRIBUTE_CHANGE)

    def on_active_frame_changed(self, doc_id: DocId) -> None:
        self._handle_event(doc_id, TriggerReason.ACTIVE_FRAME_CHANGED)

    def on_connection_event(self, doc_id: DocId) -> None:
        self._dispatcher.call_later(
            CONNECTION_EVENT_DELAY_SECONDS,
            lambda: self.schedule_rename_retry(doc_id, TriggerReason.CONNECTION_EVENT),
        )

    def on_last_reference_released(self, doc_id: DocId) -> None:
        self._renamer.forget(doc_id)
        self._retry_attempts.pop(doc_id, None)
        self._last_connections.pop(doc_id, None)
        self.update_color_only("DocumentClosed")

    def on_after_save(self, doc_id: DocId) -> None:
        self._logger.debug("Saved doc=%s", doc_id)
        self.update_color_only("AfterSave")

    def _handle_event(self, doc_id: DocId, reason: TriggerReason) -> None:
        handle = self._host.resolve_handle(doc_id)
        if handle is None or not self.handle_potential_change(doc_id, handle, reason):
            self.schedule_rename_retry(doc_id, reason)

    # Config file watch --------------------------------------------------

    def on_config_file_changed(self) -> None:
        """Debounce bursts of file notifications into one reload."""

        self._watched_config_signature = self._loader.current_signature()
        if self._config_debounce is not None:
            self._config_debounce.cancel()
        self._config_generation += 1
        generation = self._config_generation
        self._config_debounce = self._dispatcher.call_later(
            CONFIG_DEBOUNCE_SECONDS, lambda: self._config_debounce_elapsed(generation)
        )

    def _config_debounce_elapsed(self, generation: int) -> None:
        # A timer cancelled after it already posted still arrives here.
        if generation != self._config_generation:
            return
        self._config_debounce = None
        self.reload_and_apply()

    def reload_and_apply(self) -> None:
        self._logger.info("Config file changed; reloading %s", self._loader.path)
        self.reset_config()
        self._auto_config.clear_suppressed()
        config = self.load_config()
        if config is None:
            return
        settings = config.settings
        documents = [
            doc
            for doc in self.snapshot_documents()
            if self._renamer.is_eligible(doc) or self._renamer.is_tracked(doc.doc_id)
        ]
        if settings.enable_auto_rename:
            renamed = self._renamer.apply_renames(
                documents,
                self._rules,
                self._manual_rules,
                settings.new_query_rename_style,
                settings.saved_file_rename_style,
                config.alias_for,
            )
            self._logger.debug("Reload renamed %s tab(s)", renamed)
        if not settings.enable_auto_color:
            return
        if self.color_updates_suppressed():
            self._logger.info("Colour update suppressed (ConfigReload)")
            return
        self._sync_colors(self.snapshot_documents(), "ConfigReload")

    # Polling ------------------------------------------------------------

    def poll_tick(self) -> None:
        self._poll_handle = None
        if not self._running:
            return
        try:
            self._check_config_file()
            self._check_color_map()
            config = self.load_config()
            if config is not None and config.settings.enable_connection_polling:
                self._poll_connections()
        finally:
            if self._running:
                self._schedule_poll()

    def _schedule_poll(self) -> None:
        self._poll_handle = self._dispatcher.call_later(POLL_INTERVAL_SECONDS, self.poll_tick)

    def _check_config_file(self) -> None:
        signature = self._loader.current_signature()
        if signature != self._watched_config_signature:
            self._logger.debug("Config signature changed: %s", signature)
            self.on_config_file_changed()

    def _poll_connections(self) -> None:
        seen = set()
        for doc in self.snapshot_documents():
            seen.add(doc.doc_id)
            current = (doc.server, doc.database)
            if self._last_connections.get(doc.doc_id) == current:
                continue
            self._last_connections[doc.doc_id] = current
            if not self.handle_potential_change(doc.doc_id, doc.handle, TriggerReason.POLL):
                self.schedule_rename_retry(doc.doc_id, TriggerReason.POLL)
        for doc_id in [doc_id for doc_id in self._last_connections if doc_id not in seen]:
            del self._last_connections[doc_id]

    # Colours ------------------------------------------------------------

    def color_updates_suppressed(self) -> bool:
        return self._clock() < self._suppress_colors_until

    def suppress_color_updates(self, seconds: float) -> None:
        self._suppress_colors_until = self._clock() + max(0.0, seconds)

    def update_color_only(self, reason: str, force: bool = False) -> Optional[SyncResult]:
        if not force and self.color_updates_suppressed():
            self._logger.info("Colour update suppressed (%s)", reason)
            return None
        config = self.load_config()
        if config is None or not config.settings.enable_auto_color:
            return None
        return self._sync_colors(self.snapshot_documents(), reason)

    def _sync_colors(self, documents: List[DocumentSnapshot], reason: str) -> SyncResult:
        result = self._writer.update_from_snapshot(documents, self._rules, self._manual_rules)
        self._logger.debug("Colour sync (%s): %s across %s tab(s)", reason, result.value, len(documents))
        return result

    def on_rule_dialog_closed(self, changes_applied: bool) -> None:
        self.log_color_snapshot("RuleDialogClosed")
        if changes_applied:
            return
        self.update_color_only("RuleDialogClosed", force=True)
        self.suppress_color_updates(DIALOG_COLOR_SUPPRESSION_SECONDS)

    # Host-picked group colours ------------------------------------------

    def on_color_config_path_resolved(self, path: Path) -> None:
        directory = path.parent
        if directory == self._color_map_dir:
            return
        self._color_map_dir = directory
        self._color_map_signature = color_map_signature(directory)
        self._logger.debug("Watching %s for group colour maps", directory)

    def _check_color_map(self) -> None:
        if self._color_map_dir is None:
            return
        signature = color_map_signature(self._color_map_dir)
        if signature == self._color_map_signature:
            return
        self._color_map_signature = signature
        if signature.path is not None:
            self.on_group_color_map_changed()

    def on_group_color_map_changed(self) -> None:
        if self._color_map_debounce is not None:
            self._color_map_debounce.cancel()
        self._color_map_generation += 1
        generation = self._color_map_generation
        self._color_map_debounce = self._dispatcher.call_later(
            GROUP_COLOR_DEBOUNCE_SECONDS, lambda: self._color_map_debounce_elapsed(generation)
        )

    def _color_map_debounce_elapsed(self, generation: int) -> None:
        if generation != self._color_map_generation:
            return
        self._color_map_debounce = None
        self.apply_group_color_overrides()
        self.update_color_only("GroupColorMapChanged", force=True)

    def apply_group_color_overrides(self) -> bool:
        """Copy colours the user picked in the host back into the rules; True if saved."""

        config = self.load_config()
        if config is None or not config.connection_groups:
            return False
        overrides = self._writer.override_colors()
        if not overrides:
            return False
        base_by_group = self._writer.group_base_regexes(self.snapshot_documents(), self._rules)

        rules = list(config.connection_groups)
        changed = False
        for position, rule in enumerate(rules):
            base = base_by_group.get(rule.group_name.strip().casefold())
            color_index = overrides.get(base) if base else None
            if color_index is None or color_index == rule.color_index:
                continue
            if config.settings.enable_color_warning:
                clashes = [
                    other.group_name
                    for other in rules
                    if other is not rule and other.color_index == color_index
                ]
                if clashes:
                    self._logger.warning(
                        "Group '%s' now shares colour %s with %s", rule.group_name, color_index, ", ".join(clashes)
                    )
                    if self._color_conflict is not None:
                        self._color_conflict(rule.group_name, color_index)
            self._logger.info(
                "Group '%s' colour %s -> %s from host colour map", rule.group_name, rule.color_index, color_index
            )
            rules[position] = replace(rule, color_index=color_index)
            changed = True

        if not changed:
            return False
        if not self._loader.save(config.with_rules(rules)):
            return False
        self.on_config_file_changed()
        return True

    # Diagnostics --------------------------------------------------------

    def log_color_snapshot(self, reason: str) -> None:
        config = self.load_config()
        documents = self.snapshot_documents()
        self._logger.info(
            "Colour snapshot (%s): rules=%s manual=%s tabs=%s autoColor=%s path=%s",
            reason,
            len(self._rules),
            len(self._manual_rules),
            len(documents),
            config.settings.enable_auto_color if config is not None else None,
            self._writer.config_path,
        )
        for rule in self._rules:
            self._logger.info(
                "  rule '%s' server=%s db=%s priority=%s color=%s",
                rule.group_name,
                rule.server_pattern,
                rule.database_pattern,
                rule.priority,
                rule.color_index,
            )
        for doc in documents:
            self._logger.info(
                "  tab '%s' path=%s server=%s db=%s group=%s",
                doc.title,
                doc.path,
                doc.server,
                doc.database,
                match_group(self._rules, doc.server, doc.database),
            )
        for line in self._writer.preview_block(documents, self._rules, self._manual_rules):
            self._logger.info("  %s", line)
