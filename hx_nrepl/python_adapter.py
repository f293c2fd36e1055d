from __future__ import annotations

import os
import re

from .adapter import Adapter, ErrorSummary

_EXCEPTION_RE = re.compile(
    r"^(?P<klass>[A-Za-z_][\w.]*(?:Error|Exception|Exit|Interrupt|Warning|Iteration))"
    r"(?::\s*(?P<desc>.*))?$"
)
_FILE_RE = re.compile(r'^File "(?P<file>[^"]+)", line (?P<line>\d+)')


class PythonAdapter(Adapter):
    """Adapter for nREPL servers that evaluate Python (e.g. nrepl-python)."""

    language_name = "python"
    language_ids = ("python", "py")
    file_extensions = (".py",)
    comment_prefix = "#"

    def parse_error(self, raw: str) -> ErrorSummary | None:
        lines = [line.strip() for line in raw.splitlines() if line.strip()]

        # The exception line is the last one that looks like "Name: message"
        summary_index = None
        for index in range(len(lines) - 1, -1, -1):
            if _EXCEPTION_RE.match(lines[index]):
                summary_index = index
                break
        if summary_index is None:
            return None

        match = _EXCEPTION_RE.match(lines[summary_index])
        location = None
        for line in reversed(lines[:summary_index]):
            frame = _FILE_RE.match(line)
            if frame:
                location = f"{os.path.basename(frame.group('file'))}:{frame.group('line')}"
                break

        klass = match.group("klass").rsplit(".", 1)[-1]
        description = match.group("desc") or klass
        return ErrorSummary(klass, description, location)

    def format_prompt(self, namespace: str | None, code: str) -> str:
        lines = code.rstrip("\n").splitlines() or [""]
        rendered = [f">>> {lines[0]}"] + [f"... {line}" for line in lines[1:]]
        return "\n".join(rendered) + "\n"
