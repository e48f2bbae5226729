"""Keep the generated block of ColorByRegexConfig.txt in step with open tabs.

Each connection group becomes one regex line that matches the file names of
the tabs currently in that group; manual rules contribute their own lines.
Lines are salted so the host's hash-based colouring lands on the configured
colour, then spliced between the marker lines, leaving the rest of the file
untouched. The file is only rewritten when its normalised text changes.
"""
from __future__ import annotations

import enum
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from envtabs_plugin.color_path_resolver import ColorConfigPathResolver
from envtabs_plugin.color_solver import apply_color_index, strip_salt_comment
from envtabs_plugin.group_color_overrides import load_latest_color_map, override_colors_by_base
from envtabs_plugin.host_interface import DocumentSnapshot, QUERY_FILE_SUFFIX, is_rooted_path, path_file_name
from envtabs_plugin.rule_matcher import CompiledManualRule, CompiledRule, match_group

LOGGER = logging.getLogger("EnvTabs.ColorConfig")

BEGIN_MARKER = "// EnvTabs: BEGIN generated"
END_MARKER = "// EnvTabs: END generated"
MATCH_NOTHING = "(?!)"
RESOLVE_RETRY_MAX = 12
RESOLVE_RETRY_DELAY_SECONDS = 0.5
WRITE_ATTEMPTS = 3
WRITE_RETRY_DELAY_SECONDS = 0.05

Scheduler = Callable[[float, Callable[[], None]], Any]

# Characters System.Text.RegularExpressions.Regex.Escape rewrites.
_DOTNET_ESCAPES: Dict[str, str] = {
    "\\": "\\\\",
    "*": "\\*",
    "+": "\\+",
    "?": "\\?",
    "|": "\\|",
    "{": "\\{",
    "[": "\\[",
    "(": "\\(",
    ")": "\\)",
    "^": "\\^",
    "$": "\\$",
    ".": "\\.",
    "#": "\\#",
    " ": "\\ ",
    "\t": "\\t",
    "\n": "\\n",
    "\r": "\\r",
    "\f": "\\f",
}


class SyncResult(enum.Enum):
    WRITTEN = "written"
    UNCHANGED = "unchanged"
    NO_RULES = "no-rules"
    PATH_UNRESOLVED = "path-unresolved"
    FAILED = "failed"


def dotnet_regex_escape(text: str) -> str:
    return "".join(_DOTNET_ESCAPES.get(char, char) for char in text)


def build_base_regex(file_names: Sequence[str]) -> str:
    """Anchored alternation matching any of *file_names* at the end of a path."""

    if not file_names:
        return MATCH_NOTHING
    suffix = ""
    if all(name.lower().endswith(QUERY_FILE_SUFFIX) for name in file_names):
        escaped = [dotnet_regex_escape(os.path.splitext(name)[0]) for name in file_names]
        suffix = dotnet_regex_escape(QUERY_FILE_SUFFIX)
    else:
        escaped = [dotnet_regex_escape(name) for name in file_names]
    return "(?:^|[\\\\/])(?:" + "|".join(escaped) + ")" + suffix + "$"


def normalize_newlines(text: str) -> str:
    return (text or "").replace("\r\n", "\n").replace("\r", "\n")


def split_lines(text: str) -> List[str]:
    if not text:
        return []
    return normalize_newlines(text).split("\n")


def detect_newline(text: str) -> str:
    if "\r\n" in text:
        return "\r\n"
    if "\r" in text:
        return "\r"
    if "\n" in text:
        return "\n"
    return os.linesep


def _marker_bounds(lines: Sequence[str]) -> Optional[Tuple[int, int]]:
    begin = next((index for index, line in enumerate(lines) if line.rstrip() == BEGIN_MARKER), -1)
    if begin < 0:
        return None
    end = next((index for index in range(begin + 1, len(lines)) if lines[index].rstrip() == END_MARKER), -1)
    if end < 0:
        return None
    return begin, end


def extract_block_lines(text: str) -> List[str]:
    """Return the lines currently between the markers (empty when absent)."""

    lines = split_lines(text)
    bounds = _marker_bounds(lines)
    if bounds is None:
        return []
    begin, end = bounds
    return lines[begin + 1 : end]


def splice_block(existing: str, block_lines: Sequence[str]) -> str:
    """Replace the marker block in *existing*, or append it when missing."""

    newline = detect_newline(existing)
    lines = split_lines(existing)
    generated = [BEGIN_MARKER, *block_lines, END_MARKER]
    bounds = _marker_bounds(lines)
    if bounds is not None:
        begin, end = bounds
        result = lines[:begin] + generated + lines[end + 1 :]
    else:
        result = list(lines)
        if result and result[-1].strip():
            result.append("")
        result.extend(generated)
    return newline.join(result)


def build_lines(
    group_files: Mapping[str, Sequence[str]],
    rules: Sequence[CompiledRule],
    manual_rules: Sequence[CompiledManualRule],
    overrides: Optional[Mapping[str, int]] = None,
) -> List[str]:
    """Priority-ordered regex lines for the generated block."""

    overrides = overrides or {}
    entries: List[Tuple[int, str]] = []

    for manual in manual_rules:
        base = strip_salt_comment(manual.pattern)
        line = manual.pattern
        if base in overrides:
            line = apply_color_index(base, overrides[base])
        elif manual.color_index is not None:
            line = apply_color_index(base, manual.color_index)
        entries.append((manual.priority, line))

    seen_groups = set()
    for rule in rules:
        key = rule.group_name.casefold()
        if key in seen_groups:
            continue
        seen_groups.add(key)
        files = group_files.get(key) or ()
        if not files:
            entries.append((rule.priority, MATCH_NOTHING))
            continue
        base = build_base_regex(files)
        if base in overrides:
            line = apply_color_index(base, overrides[base])
        else:
            line = apply_color_index(base, rule.color_index)
        entries.append((rule.priority, line))

    entries.sort(key=lambda entry: entry[0])
    return [line for _priority, line in entries]


def build_group_file_map(
    documents: Iterable[DocumentSnapshot],
    rules: Sequence[CompiledRule],
) -> Dict[str, List[str]]:
    """Group key (casefolded name) to the sorted, de-duplicated file names in it."""

    buckets: Dict[str, Dict[str, str]] = {rule.group_name.casefold(): {} for rule in rules}
    for doc in documents:
        if not is_rooted_path(doc.path):
            continue
        group = match_group(rules, doc.server, doc.database)
        if not group:
            continue
        name = path_file_name(doc.path)
        if not name:
            continue
        # Only the file name is used so colours follow a file that moves.
        buckets.setdefault(group.casefold(), {}).setdefault(name.casefold(), name)
    return {
        key: [names[item] for item in sorted(names)]
        for key, names in buckets.items()
    }


def _read_text(path: Path) -> str:
    try:
        with open(path, "r", encoding="utf-8-sig", newline="") as handle:
            return handle.read()
    except FileNotFoundError:
        return ""


def write_if_changed(path: Path, content: str, logger: Optional[logging.Logger] = None) -> SyncResult:
    log = logger or LOGGER
    try:
        existing = _read_text(path)
    except OSError as exc:
        log.info("Could not read %s: %s", path, exc)
        return SyncResult.FAILED
    if normalize_newlines(existing) == normalize_newlines(content):
        log.debug("No changes for %s", path)
        return SyncResult.UNCHANGED

    tmp_path = path.with_name(path.name + ".tmp")
    for attempt in range(1, WRITE_ATTEMPTS + 1):
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            os.replace(tmp_path, path)
            log.debug("Wrote %s (attempt %s/%s)", path, attempt, WRITE_ATTEMPTS)
            return SyncResult.WRITTEN
        except OSError as exc:
            if attempt == WRITE_ATTEMPTS:
                log.info("Writing %s failed: %s", path, exc)
                return SyncResult.FAILED
            time.sleep(WRITE_RETRY_DELAY_SECONDS * attempt)
    return SyncResult.FAILED


class ColorConfigWriter:
    """Synchronises the generated block with the current document snapshot.

    *scheduler* runs path-resolve retries; it must deliver them on the same
    thread that calls ``update_from_snapshot`` (``SerialDispatcher.call_later``).
    """

    def __init__(
        self,
        scheduler: Scheduler,
        resolver: Optional[ColorConfigPathResolver] = None,
        on_path_resolved: Optional[Callable[[Path], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._resolver = resolver or ColorConfigPathResolver()
        self._scheduler = scheduler
        self._on_path_resolved = on_path_resolved
        self._logger = logger or LOGGER
        self._announced_path: Optional[Path] = None
        self._retry_pending = False
        self._retry_count = 0
        self._last_snapshot: Optional[
            Tuple[List[DocumentSnapshot], Sequence[CompiledRule], Sequence[CompiledManualRule]]
        ] = None

    @property
    def resolver(self) -> ColorConfigPathResolver:
        return self._resolver

    @property
    def config_path(self) -> Optional[Path]:
        return self._resolver.resolved_path

    def set_path_resolved_callback(self, callback: Optional[Callable[[Path], None]]) -> None:
        self._on_path_resolved = callback

    # Public API ---------------------------------------------------------

    def update_from_snapshot(
        self,
        documents: Iterable[DocumentSnapshot],
        rules: Sequence[CompiledRule],
        manual_rules: Sequence[CompiledManualRule] = (),
    ) -> SyncResult:
        docs = list(documents)
        rules = rules or []
        manual_rules = manual_rules or []
        self._last_snapshot = (docs, rules, manual_rules)
        self._resolver.note_documents_seen(len(docs))

        if not rules and not manual_rules:
            self._logger.debug("No rules to write; skipping colour sync")
            return SyncResult.NO_RULES

        path = self._resolver.resolve(doc.path for doc in docs)
        if path is None:
            self._logger.debug("Colour config path not resolved; skipping")
            self._schedule_resolve_retry()
            return SyncResult.PATH_UNRESOLVED
        self._retry_count = 0
        self._announce(path)

        try:
            existing = _read_text(path)
        except OSError as exc:
            self._logger.info("Could not read %s: %s", path, exc)
            return SyncResult.FAILED
        overrides = override_colors_by_base(
            extract_block_lines(existing), load_latest_color_map(path, self._logger)
        )
        lines = build_lines(build_group_file_map(docs, rules), rules, manual_rules, overrides)
        result = write_if_changed(path, splice_block(existing, lines), self._logger)
        if result is SyncResult.WRITTEN:
            self._logger.info("Updated %s with %s generated line(s)", path, len(lines))
        return result

    def preview_block(
        self,
        documents: Iterable[DocumentSnapshot],
        rules: Sequence[CompiledRule],
        manual_rules: Sequence[CompiledManualRule] = (),
    ) -> List[str]:
        """The block that would be written, without touching the filesystem."""

        docs = list(documents)
        lines = build_lines(build_group_file_map(docs, rules), rules, manual_rules)
        return [BEGIN_MARKER, *lines, END_MARKER]

    def override_colors(self) -> Dict[str, int]:
        """Host-picked colours keyed by unsalted base regex, read from the resolved file."""

        path = self._resolver.resolved_path
        if path is None:
            return {}
        try:
            existing = _read_text(path)
        except OSError as exc:
            self._logger.debug("Could not read %s: %s", path, exc)
            return {}
        return override_colors_by_base(extract_block_lines(existing), load_latest_color_map(path, self._logger))

    def group_base_regexes(
        self,
        documents: Iterable[DocumentSnapshot],
        rules: Sequence[CompiledRule],
    ) -> Dict[str, str]:
        """Casefolded group name to the unsalted regex its line would carry."""

        group_files = build_group_file_map(documents, rules)
        return {key: build_base_regex(files) for key, files in group_files.items() if files}

    # Internal helpers ---------------------------------------------------

    def _announce(self, path: Path) -> None:
        if path == self._announced_path:
            return
        self._announced_path = path
        self._logger.info("Colour config path: %s", path)
        if self._on_path_resolved is not None:
            self._on_path_resolved(path)

    def _schedule_resolve_retry(self) -> None:
        if self._retry_pending:
            return
        if self._retry_count >= RESOLVE_RETRY_MAX:
            self._logger.debug("Colour config resolve retries exhausted")
            return
        self._retry_pending = True
        self._retry_count += 1
        self._logger.debug(
            "Colour config resolve retry %s/%s in %.1fs",
            self._retry_count,
            RESOLVE_RETRY_MAX,
            RESOLVE_RETRY_DELAY_SECONDS,
        )
        self._scheduler(RESOLVE_RETRY_DELAY_SECONDS, self._run_resolve_retry)

    def _run_resolve_retry(self) -> None:
        self._retry_pending = False
        if self._last_snapshot is None:
            return
        docs, rules, manual_rules = self._last_snapshot
        self.update_from_snapshot(docs, rules, manual_rules)
