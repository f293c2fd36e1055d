from __future__ import annotations

import logging
import os

from .adapter import Adapter, GenericAdapter
from .clojure_adapter import ClojureAdapter
from .config import Config
from .python_adapter import PythonAdapter

log = logging.getLogger(__name__)


class AdapterRegistry:
    """Maps buffer language ids and file extensions to adapters."""

    def __init__(self, fallback: Adapter | None = None) -> None:
        self._adapters: list[Adapter] = []
        self.fallback = fallback or GenericAdapter()

    def register(self, adapter: Adapter) -> None:
        self._adapters.append(adapter)

    def for_language(self, language: str | None) -> Adapter:
        for adapter in self._adapters:
            if adapter.handles(language):
                return adapter
        if language:
            log.debug("No adapter for language %r, using generic", language)
        return self.fallback

    def for_path(self, path: str) -> Adapter | None:
        ext = os.path.splitext(path)[1].lower()
        for adapter in self._adapters:
            if ext and ext in adapter.file_extensions:
                return adapter
        return None

    @property
    def adapters(self) -> list[Adapter]:
        return list(self._adapters)


def default_registry(config: Config | None = None) -> AdapterRegistry:
    cfg = config or Config()
    registry = AdapterRegistry()
    registry.register(ClojureAdapter(
        nrepl_version=cfg.nrepl_version,
        cider_version=cfg.cider_version,
    ))
    registry.register(PythonAdapter())
    return registry
