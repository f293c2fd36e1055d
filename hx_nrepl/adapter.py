"""Adapter contract — per-language formatting and jack-in command building.

Every piece of text the REPL buffer receives goes through an Adapter.  The
contract each implementation keeps:

- ``prettify_error`` never raises and never returns an empty string
- ``format_prompt`` always ends with a line break
- ``format_result`` always ends with a blank-line separator
- ``jack_in_command`` returns ``None`` when the language cannot jack in
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from .models import EvalResult, ProjectInfo

UNKNOWN_ERROR = "Unknown error"


@dataclass(frozen=True)
class ErrorSummary:
    category: str
    description: str
    location: str | None = None

    def render(self) -> str:
        where = f" at {self.location}" if self.location else ""
        return f"{self.category}{where}: {self.description}"


def first_line(text: str) -> str | None:
    """Return the first non-blank line of ``text``, stripped."""
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return None


def _ensure_newline(text: str) -> str:
    return text if text.endswith("\n") else text + "\n"


class Adapter(ABC):
    language_name: str
    language_ids: tuple[str, ...] = ()
    file_extensions: tuple[str, ...] = ()
    comment_prefix: str = ";;"

    def handles(self, language: str | None) -> bool:
        if not language:
            return False
        lang = language.lower()
        return lang == self.language_name or lang in self.language_ids

    # -- error heuristics ---------------------------------------------------

    def parse_error(self, raw: str) -> ErrorSummary | None:
        """Turn a raw exception text into a summary, or ``None`` if unmatched."""
        return None

    def prettify_error(self, raw: str) -> str:
        text = raw or ""
        summary = self.parse_error(text)
        if summary is not None:
            return summary.render()
        return first_line(text) or UNKNOWN_ERROR

    # -- rendering ----------------------------------------------------------

    @abstractmethod
    def format_prompt(self, namespace: str | None, code: str) -> str:
        ...

    def format_value(self, value: str) -> str:
        return _ensure_newline(value)

    def comment(self, text: str) -> str:
        """Prefix every line of ``text`` with the comment token."""
        lines = text.splitlines() or [""]
        return "".join(f"{self.comment_prefix} {line}".rstrip() + "\n" for line in lines)

    def format_error_block(self, error: str) -> str:
        """One summary line plus the full error, all commented out."""
        block = self.comment(self.prettify_error(error))
        if error.strip() and error.strip() != self.prettify_error(error):
            block += self.comment(error.rstrip("\n"))
        return block

    def format_result(self, code: str, result: EvalResult) -> str:
        parts = [self.format_prompt(result.namespace, code)]
        for chunk in result.output:
            parts.append(_ensure_newline(chunk))
        if result.error:
            parts.append(self.format_error_block(result.error))
        if result.value is not None:
            parts.append(self.format_value(result.value))
        parts.append("\n")
        return "".join(parts)

    def format_failure(
        self, code: str, namespace: str | None, error: str
    ) -> tuple[str, str]:
        """Return ``(summary, rendering)`` for a timeout or transport failure."""
        summary = self.prettify_error(error)
        rendered = self.format_prompt(namespace, code) + self.format_error_block(error) + "\n"
        return summary, rendered

    # -- jack-in ------------------------------------------------------------

    def jack_in_command(self, project: ProjectInfo, port: int) -> str | None:
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.language_name!r})"


class GenericAdapter(Adapter):
    """Fallback for languages without a dedicated adapter."""

    language_name = "generic"
    comment_prefix = ";;"
    max_error_chars = 120

    def prettify_error(self, raw: str) -> str:
        line = first_line(raw or "") or UNKNOWN_ERROR
        if len(line) > self.max_error_chars:
            line = line[: self.max_error_chars - 3] + "..."
        return line

    def format_prompt(self, namespace: str | None, code: str) -> str:
        return _ensure_newline(f"> {code}")
