"""What the command layer needs from the editor.

``BufferHost`` keeps buffers in memory.  It backs the MCP command server
(whose clients read the REPL buffer back through a tool) and the tests.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Sequence

from .models import AliasInfo, SplitOrientation


class EditorHost(ABC):

    @abstractmethod
    def current_language(self) -> str | None:
        """Language id of the buffer the user is working in."""
        ...

    @abstractmethod
    def workspace_root(self) -> str:
        ...

    @abstractmethod
    def show_buffer(self, name: str, orientation: SplitOrientation) -> None:
        """Create the buffer if needed and show it in a split."""
        ...

    @abstractmethod
    def append(self, name: str, text: str) -> None:
        ...

    @abstractmethod
    def set_language(self, name: str, language: str) -> None:
        ...

    @abstractmethod
    def status(self, message: str) -> None:
        """Transient one-line message."""
        ...

    @abstractmethod
    def pick_aliases(
        self, aliases: Sequence[AliasInfo], preselected: Sequence[str]
    ) -> list[str] | None:
        """Let the user choose aliases; ``None`` means the pick was cancelled."""
        ...

    @abstractmethod
    def confirm(self, prompt: str) -> bool:
        ...


class BufferHost(EditorHost):
    """In-memory host: buffers are lists of text chunks."""

    def __init__(
        self,
        workspace: str | None = None,
        *,
        language: str | None = None,
        auto_confirm: bool = True,
        max_status: int = 50,
    ) -> None:
        self.workspace = workspace or os.getcwd()
        self.language = language
        self.auto_confirm = auto_confirm
        self.buffers: dict[str, list[str]] = {}
        self.buffer_languages: dict[str, str] = {}
        self.layout: dict[str, SplitOrientation] = {}
        self.messages: deque[str] = deque(maxlen=max_status)

    def current_language(self) -> str | None:
        return self.language

    def workspace_root(self) -> str:
        return self.workspace

    def show_buffer(self, name: str, orientation: SplitOrientation) -> None:
        self.buffers.setdefault(name, [])
        self.layout[name] = orientation

    def append(self, name: str, text: str) -> None:
        self.buffers.setdefault(name, []).append(text)

    def set_language(self, name: str, language: str) -> None:
        self.buffer_languages[name] = language

    def status(self, message: str) -> None:
        self.messages.append(message)

    def pick_aliases(
        self, aliases: Sequence[AliasInfo], preselected: Sequence[str]
    ) -> list[str] | None:
        known = {alias.name for alias in aliases}
        return [name for name in preselected if name in known]

    def confirm(self, prompt: str) -> bool:
        return self.auto_confirm

    def text(self, name: str) -> str:
        return "".join(self.buffers.get(name, []))
