"""Remembers which deps.edn aliases the user last jacked in with.

The stored list only pre-selects entries in the alias picker; it never
decides anything on its own.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from pathlib import Path

import edn_format

log = logging.getLogger(__name__)

CONFIG_DIR = ".helix"
ALIASES_FILE = "nrepl-aliases.edn"


def aliases_path(root: str | Path) -> Path:
    return Path(root) / CONFIG_DIR / ALIASES_FILE


def save(root: str | Path, names: Iterable[str]) -> bool:
    """Write the chosen alias names; returns False if the file can't be written."""
    path = aliases_path(root)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(edn_format.dumps([str(name) for name in names]) + "\n", encoding="utf-8")
    except OSError as exc:
        log.warning("Could not save alias selection to %s: %s", path, exc)
        return False
    return True


def load(root: str | Path) -> list[str] | None:
    path = aliases_path(root)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        log.warning("Could not read alias selection %s: %s", path, exc)
        return None

    try:
        data = edn_format.loads(text)
    except Exception as exc:  # edn_format raises several unrelated types
        log.warning("Ignoring malformed alias selection %s: %s", path, exc)
        return None

    if data is None or isinstance(data, (str, bytes, Mapping)):
        return None
    try:
        items = list(data)
    except TypeError:
        return None
    if not all(isinstance(item, str) for item in items):
        return None
    return items
