"""Find the host's ColorByRegexConfig.txt.

The host keeps the file in a GUID-named folder under the temp directory and
never tells anyone which one. It is found from the paths of open query
documents first (new queries live beside it), then by scanning temp for GUID
folders created around the time the first document was seen.
"""
from __future__ import annotations

import logging
import os
import tempfile
import time
import uuid
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

from envtabs_plugin.host_interface import is_rooted_path

LOGGER = logging.getLogger("EnvTabs.ColorConfig")

COLOR_CONFIG_FILE_NAME = "ColorByRegexConfig.txt"
ANCESTOR_WALK_DEPTH = 4
TEMP_SCAN_BACKOFF_SECONDS = 3.0
CREATION_SKEW_SECONDS = 60.0
CREATION_MAX_WINDOW_SECONDS = 120.0


def is_guid_name(name: str) -> bool:
    if not name or not name.strip():
        return False
    try:
        uuid.UUID(name.strip())
    except ValueError:
        return False
    return True


def is_version_folder_name(name: str) -> bool:
    return len(name) >= 2 and name[0] == "v" and name[1:].isdigit()


def has_sibling_version_folder(config_path: Path) -> bool:
    """True when the folder holding *config_path* also holds a ``v<digits>`` folder."""

    try:
        return any(
            entry.is_dir() and is_version_folder_name(entry.name) for entry in config_path.parent.iterdir()
        )
    except OSError:
        return False


def _creation_time(path: Path) -> float:
    stat = path.stat()
    return float(getattr(stat, "st_birthtime", stat.st_ctime))


class ColorConfigPathResolver:
    """Resolves and caches the colour config path; the cache is revalidated on use."""

    def __init__(
        self,
        temp_root: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._temp_root = Path(temp_root) if temp_root is not None else Path(tempfile.gettempdir())
        self._clock = clock
        self._logger = logger or LOGGER
        self._resolved: Optional[Path] = None
        self._first_doc_seen: Optional[float] = None
        self._last_temp_scan: Optional[float] = None

    @property
    def temp_root(self) -> Path:
        return self._temp_root

    @property
    def resolved_path(self) -> Optional[Path]:
        return self._resolved

    @property
    def first_doc_seen(self) -> Optional[float]:
        return self._first_doc_seen

    def note_documents_seen(self, count: int) -> None:
        if self._first_doc_seen is None and count > 0:
            self._first_doc_seen = self._clock()

    def reset(self) -> None:
        self._resolved = None

    def resolve(self, document_paths: Iterable[Optional[str]]) -> Optional[Path]:
        if self._resolved is not None and self._resolved.is_file():
            return self._resolved
        self._resolved = None

        for raw in document_paths:
            candidate = self.resolve_from_document(raw)
            if candidate is not None:
                self._logger.debug("Colour config resolved from document path: %s", candidate)
                self._resolved = candidate
                return candidate

        if self._begin_temp_scan():
            candidate = self.scan_temp_root()
            if candidate is not None:
                self._logger.debug("Colour config resolved from temp scan: %s", candidate)
                self._resolved = candidate
                return candidate
        return None

    def resolve_from_document(self, raw_path: Optional[str]) -> Optional[Path]:
        if not is_rooted_path(raw_path):
            return None
        start = Path(raw_path).parent
        if not start.is_absolute():
            # Rooted for the other path flavour (a Windows path on POSIX); nothing to look up.
            self._logger.debug("Skipping non-native document path: %s", raw_path)
            return None
        try:
            guid_root = self._temp_guid_root(start)
            if guid_root is not None:
                candidate = guid_root / COLOR_CONFIG_FILE_NAME
                if candidate.is_file():
                    if has_sibling_version_folder(candidate):
                        return candidate
                    self._logger.debug("Skipping temp candidate without v# folder: %s", candidate)

            walker: Optional[Path] = start
            for _ in range(ANCESTOR_WALK_DEPTH):
                if walker is None:
                    break
                candidate = walker / COLOR_CONFIG_FILE_NAME
                if candidate.is_file():
                    return candidate
                parent = walker.parent
                walker = parent if parent != walker else None
        except OSError as exc:
            self._logger.debug("Colour config lookup failed for %s: %s", raw_path, exc)
        return None

    def scan_temp_root(self) -> Optional[Path]:
        """Pick the earliest GUID folder created near the first document sighting."""

        reference = self._first_doc_seen
        if reference is None:
            self._logger.debug("No document seen yet; skipping temp scan")
            return None
        try:
            entries = [entry for entry in self._temp_root.iterdir() if entry.is_dir() and is_guid_name(entry.name)]
        except OSError as exc:
            self._logger.debug("Temp scan of %s failed: %s", self._temp_root, exc)
            return None

        dated: List[Tuple[float, Path]] = []
        for entry in entries:
            try:
                dated.append((_creation_time(entry), entry))
            except OSError:
                continue
        dated.sort(key=lambda item: item[0])

        for created, folder in dated:
            delta = created - reference
            if delta < -CREATION_SKEW_SECONDS or delta > CREATION_MAX_WINDOW_SECONDS:
                continue
            candidate = folder / COLOR_CONFIG_FILE_NAME
            try:
                exists = candidate.is_file()
            except OSError:
                continue
            self._logger.debug("Temp scan candidate %s delta=%.3fs exists=%s", folder, delta, exists)
            if not exists:
                continue
            if has_sibling_version_folder(candidate):
                return candidate
            self._logger.debug("Skipping temp candidate without v# folder: %s", candidate)
        self._logger.debug("Temp scan found no colour config")
        return None

    # Internal helpers ---------------------------------------------------

    def _begin_temp_scan(self) -> bool:
        now = self._clock()
        if self._last_temp_scan is not None and now - self._last_temp_scan < TEMP_SCAN_BACKOFF_SECONDS:
            return False
        self._last_temp_scan = now
        return True

    def _temp_guid_root(self, start: Path) -> Optional[Path]:
        temp_prefix = os.path.normcase(str(self._temp_root))
        for folder in (start, *start.parents):
            if is_guid_name(folder.name) and os.path.normcase(str(folder)).startswith(temp_prefix):
                return folder
        return None
