"""Rename query tabs after the group they belong to.

Each document keeps the sequence number it was first given in its group for
as long as it stays open, so titles never renumber underneath the user. New
numbers always continue past the highest one still in use for that group.
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence

from envtabs_plugin.config_models import DEFAULT_NEW_QUERY_RENAME_STYLE, DEFAULT_SAVED_FILE_RENAME_STYLE
from envtabs_plugin.host_interface import DocId, DocumentSnapshot, is_query_path, path_file_name, path_stem
from envtabs_plugin.rule_matcher import CompiledManualRule, CompiledRule, match_group, match_manual

LOGGER = logging.getLogger("EnvTabs.Renamer")

DEFAULT_TITLE_PATTERN = re.compile(r"^SQLQuery\d+\.sql\b", re.IGNORECASE)
_STYLE_TOKENS = re.compile(r"\[groupName\]|\[#\]|#|\[filename\]|\[server\]|\[db\]")
_TITLE_SEPARATORS = (" ", "\t", "-", "*", "(", ":", "|")

SetTitle = Callable[[Any, str], bool]


@dataclass(frozen=True)
class TabAssignment:
    group_name: str
    index: int


class TabAssignmentStore:
    """Per-document group and sequence assignments."""

    def __init__(self) -> None:
        self._assignments: Dict[DocId, TabAssignment] = {}

    def get(self, doc_id: DocId) -> Optional[TabAssignment]:
        return self._assignments.get(doc_id)

    def assignments(self) -> Mapping[DocId, TabAssignment]:
        return dict(self._assignments)

    def next_index(self, group_name: str) -> int:
        key = group_name.casefold()
        highest = 0
        for assignment in self._assignments.values():
            if assignment.group_name.casefold() == key:
                highest = max(highest, assignment.index)
        return highest + 1

    def assign(self, doc_id: DocId, group_name: str) -> TabAssignment:
        """Return the document's assignment for *group_name*, creating one if needed."""

        current = self._assignments.get(doc_id)
        if current is not None and current.group_name.casefold() == group_name.casefold():
            return current
        assignment = TabAssignment(group_name, self.next_index(group_name))
        self._assignments[doc_id] = assignment
        return assignment

    def forget(self, doc_id: DocId) -> None:
        self._assignments.pop(doc_id, None)


def is_temp_file(path: Optional[str], temp_root: Optional[str] = None) -> bool:
    if not path:
        return False
    root = temp_root if temp_root is not None else tempfile.gettempdir()
    return os.path.normcase(path).startswith(os.path.normcase(root))


def is_rename_eligible(title: Optional[str], path: Optional[str], temp_root: Optional[str] = None) -> bool:
    """A tab may be renamed while it still carries a title the host picked."""

    if title and DEFAULT_TITLE_PATTERN.match(title):
        return True
    if not path or not path.strip():
        return False
    if is_temp_file(path, temp_root):
        return is_query_path(path)
    # Saved files only while the title is still the bare file name.
    return bool(title) and title.casefold() == path_file_name(path).casefold()


def compose_title(
    style: str,
    group_name: str,
    index: int,
    *,
    file_name: str = "",
    server: Optional[str] = None,
    database: Optional[str] = None,
) -> str:
    values = {
        "[groupName]": group_name,
        "[#]": str(index),
        "#": str(index),
        "[filename]": file_name,
        "[server]": server or "",
        "[db]": database or "",
    }
    title = _STYLE_TOKENS.sub(lambda match: values[match.group(0)], style)
    return " ".join(title.split())


def title_already_applied(current: Optional[str], composed: str) -> bool:
    if not current:
        return False
    current_key = current.casefold()
    composed_key = composed.casefold()
    if current_key == composed_key:
        return True
    return current_key.startswith(composed_key) and current_key[len(composed_key)] in _TITLE_SEPARATORS


class TabRenamer:
    """Applies group titles to tabs through the host's ``set_title``."""

    def __init__(
        self,
        set_title: SetTitle,
        store: Optional[TabAssignmentStore] = None,
        temp_root: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._set_title = set_title
        self.store = store or TabAssignmentStore()
        self._temp_root = temp_root
        self._logger = logger or LOGGER

    def forget(self, doc_id: DocId) -> None:
        self.store.forget(doc_id)

    def is_eligible(self, doc: DocumentSnapshot) -> bool:
        return is_rename_eligible(doc.title, doc.path, self._temp_root)

    def is_tracked(self, doc_id: DocId) -> bool:
        """True once this renamer has assigned the document to a group."""
        return self.store.get(doc_id) is not None

    def apply_renames(
        self,
        documents: Iterable[DocumentSnapshot],
        rules: Sequence[CompiledRule],
        manual_rules: Sequence[CompiledManualRule] = (),
        style: Optional[str] = None,
        saved_style: Optional[str] = None,
        aliases: Optional[Callable[[Optional[str]], Optional[str]]] = None,
    ) -> int:
        """Rename every matched document; return how many titles were written."""

        new_query_style = style or DEFAULT_NEW_QUERY_RENAME_STYLE
        saved_file_style = saved_style or DEFAULT_SAVED_FILE_RENAME_STYLE
        renamed = 0
        for doc in documents:
            if doc.handle is None:
                continue
            manual = match_manual(manual_rules, doc.path)
            group = manual.group_name if manual is not None else match_group(rules, doc.server, doc.database)
            if not group:
                continue
            assignment = self.store.assign(doc.doc_id, group)

            if manual is not None:
                title = assignment.group_name
            elif is_temp_file(doc.path, self._temp_root):
                title = compose_title(new_query_style, assignment.group_name, assignment.index)
            else:
                server = doc.server
                if aliases is not None:
                    server = aliases(doc.server) or doc.server
                title = compose_title(
                    saved_file_style,
                    assignment.group_name,
                    assignment.index,
                    file_name=path_stem(doc.path),
                    server=server,
                    database=doc.database,
                )

            if title_already_applied(doc.title, title):
                continue
            if self._set_title(doc.handle, title):
                renamed += 1
                self._logger.info("Renamed doc=%s '%s' -> '%s'", doc.doc_id, doc.title, title)
            else:
                self._logger.info("Rename failed doc=%s title='%s' target='%s'", doc.doc_id, doc.title, title)
        return renamed
