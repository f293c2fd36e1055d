"""The ``.nrepl-port`` discovery file other tools read to find the server."""

from __future__ import annotations

import logging
from pathlib import Path

log = logging.getLogger(__name__)

PORT_FILE_NAME = ".nrepl-port"


def port_file_path(root: str | Path) -> Path:
    return Path(root) / PORT_FILE_NAME


def write_port_file(root: str | Path, port: int) -> bool:
    path = port_file_path(root)
    try:
        path.write_text(str(port), encoding="utf-8")
    except OSError as exc:
        log.error("Could not write %s: %s", path, exc)
        return False
    return True


def read_port_file(root: str | Path) -> int | None:
    path = port_file_path(root)
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        log.warning("Ignoring unreadable %s: %s", path, exc)
        return None


def delete_port_file(root: str | Path) -> bool:
    """Remove the discovery file; returns whether one was removed."""
    path = port_file_path(root)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        log.warning("Could not delete %s: %s", path, exc)
        return False
    return True
