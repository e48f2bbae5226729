"""Seam between the tab engine and the editor that hosts it.

Everything host-specific (window frames, document tables, connection
objects) stays behind :class:`EditorHost`. The engine only ever sees opaque
document ids and handles, plus the strings read through the adapter.
"""
from __future__ import annotations

import enum
import ntpath
import os
import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol, Tuple

QUERY_FILE_SUFFIX = ".sql"

DocId = Any


class TriggerReason(enum.Enum):
    DOCUMENT_SHOWN = "DocumentWindowShow"
    FIRST_LOCK = "FirstDocumentLock"
    ATTRIBUTE_CHANGE = "AttributeChange"
    ATTRIBUTE_CHANGE_EX = "AttributeChangeEx"
    ACTIVE_FRAME_CHANGED = "ActiveFrameChanged"
    CONNECTION_EVENT = "DocViewEvent"
    POLL = "ConnectionPoll"

    @property
    def is_connection_event(self) -> bool:
        return self in _CONNECTION_REASONS

    @property
    def forces_rename_check(self) -> bool:
        """Connection changes re-check tabs even when their title looks customised."""

        return self in _FORCED_RECHECK_REASONS


_CONNECTION_REASONS = frozenset(
    {
        TriggerReason.DOCUMENT_SHOWN,
        TriggerReason.ATTRIBUTE_CHANGE,
        TriggerReason.ATTRIBUTE_CHANGE_EX,
        TriggerReason.ACTIVE_FRAME_CHANGED,
        TriggerReason.CONNECTION_EVENT,
        TriggerReason.POLL,
    }
)
_FORCED_RECHECK_REASONS = frozenset(
    {
        TriggerReason.ATTRIBUTE_CHANGE,
        TriggerReason.ATTRIBUTE_CHANGE_EX,
        TriggerReason.CONNECTION_EVENT,
        TriggerReason.POLL,
    }
)


class EditorHost(Protocol):
    """Operations the engine needs from the editor."""

    def open_document_ids(self) -> Iterable[DocId]: ...
    def document_path(self, doc_id: DocId) -> Optional[str]: ...
    def resolve_handle(self, doc_id: DocId) -> Optional[Any]: ...
    def read_title(self, handle: Any) -> Optional[str]: ...
    def read_connection(self, handle: Any) -> Optional[Tuple[Optional[str], Optional[str]]]: ...
    def set_title(self, handle: Any, title: str) -> bool: ...


@dataclass(frozen=True)
class DocumentSnapshot:
    doc_id: DocId
    title: Optional[str]
    path: Optional[str]
    server: Optional[str] = None
    database: Optional[str] = None
    handle: Any = None

    @property
    def file_name(self) -> str:
        return path_file_name(self.path)

    @property
    def is_query_file(self) -> bool:
        return is_query_path(self.path)

    @property
    def has_connection(self) -> bool:
        return bool(self.server and self.server.strip())


# Path helpers -------------------------------------------------------------
# Document paths come from the host verbatim and are usually Windows paths,
# so both separators are honoured regardless of the platform we run on.


def is_rooted_path(path: Optional[str]) -> bool:
    if not path or not path.strip():
        return False
    return os.path.isabs(path) or ntpath.isabs(path)


def path_file_name(path: Optional[str]) -> str:
    if not path:
        return ""
    return re.split(r"[\\/]", path)[-1]


def path_stem(path: Optional[str]) -> str:
    name = path_file_name(path)
    stem, _ext = os.path.splitext(name)
    return stem


def is_query_path(path: Optional[str]) -> bool:
    return bool(path) and path.lower().endswith(QUERY_FILE_SUFFIX)


def parse_caption_connection(caption: Optional[str]) -> Optional[Tuple[str, Optional[str]]]:
    """Read ``server.database`` out of a ``"file - server.db (user)"`` caption."""

    if not caption or not caption.strip():
        return None
    dash = caption.find(" - ")
    if dash < 0:
        return None
    tail = caption[dash + 3 :]
    paren = tail.find(" (")
    if paren >= 0:
        tail = tail[:paren]
    tail = tail.strip()
    if not tail:
        return None
    dot = tail.find(".")
    if 0 < dot < len(tail) - 1:
        server = tail[:dot].strip()
        database: Optional[str] = tail[dot + 1 :].strip() or None
    else:
        server, database = tail, None
    if not server:
        return None
    return server, database
