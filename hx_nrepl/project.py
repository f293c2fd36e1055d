"""Project Detector — finds the build descriptor and its aliases.

Only the highest-priority descriptor present in a workspace counts, so the
result is stable when a project carries several.  Alias parsing never blocks
detection: a descriptor that fails to parse simply yields no aliases.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import edn_format

from .jack_in.discovery import PORT_FILE_NAME
from .models import AliasInfo, ProjectInfo, ProjectType

log = logging.getLogger(__name__)

# Scanned in this order; the first hit wins
DESCRIPTORS: tuple[tuple[str, ProjectType], ...] = (
    ("deps.edn", ProjectType.CLOJURE_CLI),
    ("bb.edn", ProjectType.BABASHKA),
    ("project.clj", ProjectType.LEININGEN),
)


def _key_name(key: Any) -> str | None:
    """Name of an EDN map key: ``:dev`` -> ``"dev"``, ``"dev"`` -> ``"dev"``."""
    if isinstance(key, edn_format.Keyword):
        name = getattr(key, "name", None) or str(key)
        return name.lstrip(":")
    if isinstance(key, str):
        return key
    return None


def _get(data: Mapping[Any, Any], name: str) -> Any:
    for key, value in data.items():
        if _key_name(key) == name:
            return value
    return None


def parse_aliases(text: str) -> tuple[AliasInfo, ...] | None:
    """Extract the top-level ``:aliases`` of a deps.edn document.

    Returns ``None`` when the document does not parse or has no aliases.
    """
    try:
        data = edn_format.loads(text)
    except Exception as exc:  # edn_format raises several unrelated types
        log.warning("Could not parse deps.edn: %s", exc)
        return None

    if not isinstance(data, Mapping):
        return None
    aliases = _get(data, "aliases")
    if not isinstance(aliases, Mapping) or not aliases:
        return None

    result: list[AliasInfo] = []
    for key, body in aliases.items():
        name = _key_name(key)
        if not name:
            continue
        has_main_opts = False
        description = None
        if isinstance(body, Mapping):
            has_main_opts = _get(body, "main-opts") is not None
            doc = _get(body, "doc")
            if isinstance(doc, str):
                description = doc
        result.append(AliasInfo(name=name, has_main_opts=has_main_opts, description=description))
    return tuple(result) or None


def detect_project(root: str | Path) -> ProjectInfo:
    base = Path(root)
    has_port_file = (base / PORT_FILE_NAME).is_file()

    for filename, project_type in DESCRIPTORS:
        descriptor = base / filename
        if not descriptor.is_file():
            continue

        aliases = None
        if project_type is ProjectType.CLOJURE_CLI:
            try:
                aliases = parse_aliases(descriptor.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError) as exc:
                log.warning("Could not read %s: %s", descriptor, exc)

        log.info("Detected %s project at %s", project_type.value, base)
        return ProjectInfo(
            project_type=project_type,
            project_root=str(base),
            project_file=str(descriptor),
            aliases=aliases,
            has_discovery_file=has_port_file,
        )

    return ProjectInfo(
        project_type=ProjectType.NONE,
        project_root=str(base),
        has_discovery_file=has_port_file,
    )


def find_project_root(start: str | Path) -> str | None:
    """Walk up from ``start`` to the nearest directory holding a descriptor."""
    current = Path(start).resolve()
    if current.is_file():
        current = current.parent
    for directory in (current, *current.parents):
        if any((directory / filename).is_file() for filename, _ in DESCRIPTORS):
            return str(directory)
    return None
