"""Read colours the user picked for tab groups inside the host.

When a user recolours a group from the host's own UI, the host records the
choice in ``customized-groupid-color-*.json`` next to ColorByRegexConfig.txt,
keyed by the hash of the regex line. Those choices win over configured
colour indices so that regenerating the block does not undo them.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional

from envtabs_plugin.color_solver import BUCKET_COUNT, stable_hash_code, strip_salt_comment

LOGGER = logging.getLogger("EnvTabs.ColorConfig")

COLOR_MAP_GLOB = "customized-groupid-color-*.json"


class GroupColorMapError(ValueError):
    """Raised when a group colour map file does not have the expected shape."""


@dataclass(frozen=True)
class ColorMapSignature:
    path: Optional[str]
    mtime_ns: Optional[int]
    size: Optional[int]


def find_latest_color_map(config_dir: Optional[Path]) -> Optional[Path]:
    if config_dir is None:
        return None
    try:
        candidates = [path for path in config_dir.glob(COLOR_MAP_GLOB) if path.is_file()]
    except OSError:
        return None
    if not candidates:
        return None
    try:
        return max(candidates, key=lambda path: path.stat().st_mtime_ns)
    except OSError:
        return None


def color_map_signature(config_dir: Optional[Path]) -> ColorMapSignature:
    latest = find_latest_color_map(config_dir)
    if latest is None:
        return ColorMapSignature(None, None, None)
    try:
        stat = latest.stat()
    except OSError:
        return ColorMapSignature(str(latest), None, None)
    return ColorMapSignature(str(latest), stat.st_mtime_ns, stat.st_size)


def load_color_map(path: Path) -> Dict[int, int]:
    """Return ``{group_id: colour_index}`` from a host colour map file."""

    data = json.loads(path.read_text(encoding="utf-8-sig"))
    if not isinstance(data, dict):
        raise GroupColorMapError(f"{path} must contain a JSON object")
    color_map = data.get("ColorMap")
    if color_map is None:
        return {}
    if not isinstance(color_map, dict):
        raise GroupColorMapError(f"{path}: ColorMap must be an object")
    result: Dict[int, int] = {}
    for entry in color_map.values():
        if not isinstance(entry, dict):
            continue
        try:
            group_id = int(entry.get("GroupId"))
            color_index = int(entry.get("ColorIndex"))
        except (TypeError, ValueError):
            continue
        if 0 <= color_index < BUCKET_COUNT:
            result[group_id] = color_index
    return result


def load_latest_color_map(config_path: Optional[Path], logger: Optional[logging.Logger] = None) -> Dict[int, int]:
    log = logger or LOGGER
    if config_path is None:
        return {}
    latest = find_latest_color_map(config_path.parent)
    if latest is None:
        return {}
    try:
        return load_color_map(latest)
    except (OSError, json.JSONDecodeError, GroupColorMapError) as exc:
        log.info("Ignoring group colour map %s: %s", latest, exc)
        return {}


def override_colors_by_base(block_lines: Iterable[str], color_map: Dict[int, int]) -> Dict[str, int]:
    """Map each generated line's unsalted regex to the colour the host stored for it."""

    if not color_map:
        return {}
    overrides: Dict[str, int] = {}
    for raw in block_lines:
        line = (raw or "").strip()
        if not line or line.startswith("//"):
            continue
        desired = color_map.get(stable_hash_code(line))
        if desired is None:
            continue
        base = strip_salt_comment(line)
        if base.strip():
            overrides[base] = desired
    return overrides
