from __future__ import annotations

import importlib.util
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from trailguard.constants import HANDLER_REGISTRATION_HOOK, ROOT_HANDLER_FILE
from trailguard.schemas import CleanupConfig
from trailguard.services.ledger import TrackedResource
from trailguard.services.providers.base import CleanupHandler, CleanupProvider
from trailguard.services.providers.registry import create_provider

LOGGER = logging.getLogger("trailguard.handlers")


class HandlerRegistry:
    """Named cleanup handlers; later registrations replace earlier ones."""

    def __init__(self) -> None:
        self._handlers: Dict[str, CleanupHandler] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def register(self, name: str, handler: Optional[CleanupHandler] = None):
        """Register ``handler`` under ``name``; usable as a decorator when handler is omitted."""
        if handler is None:

            def decorator(func: CleanupHandler) -> CleanupHandler:
                self._handlers[name] = func
                return func

            return decorator
        self._handlers[name] = handler
        return handler

    def update(self, handlers: Dict[str, CleanupHandler]) -> None:
        self._handlers.update(handlers)

    def get(self, name: str) -> Optional[CleanupHandler]:
        return self._handlers.get(name)

    def names(self) -> List[str]:
        return sorted(self._handlers)


@dataclass
class LoadedHandlers:
    registry: HandlerRegistry
    type_mappings: Dict[str, str] = field(default_factory=dict)
    provider: Optional[CleanupProvider] = None


def load_handler_file(path: Path, registry: HandlerRegistry) -> bool:
    """Import ``path`` and let its registration hook add handlers to ``registry``."""
    if not path.is_file():
        return False
    module_name = f"trailguard._cleanup_handlers.{path.parent.name}.{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        return False

    module = importlib.util.module_from_spec(spec)
    sys.modules[module.__name__] = module
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        sys.modules.pop(module.__name__, None)
        LOGGER.warning("Could not load cleanup handler file %s: %s", path, exc)
        return False

    hook: Optional[Callable[[HandlerRegistry], None]] = getattr(module, HANDLER_REGISTRATION_HOOK, None)
    if not callable(hook):
        LOGGER.warning("Cleanup handler file %s does not define %s()", path, HANDLER_REGISTRATION_HOOK)
        return False
    try:
        hook(registry)
    except Exception as exc:
        LOGGER.warning("Cleanup handler file %s failed to register handlers: %s", path, exc)
        return False
    LOGGER.debug("Loaded cleanup handlers from %s", path)
    return True


def _discovered_files(bases: Iterable[str], pattern: str, cwd: Path) -> List[Path]:
    files: List[Path] = []
    for base in bases:
        base_path = Path(base)
        if not base_path.is_absolute():
            base_path = cwd / base_path
        if not base_path.is_dir():
            continue
        for candidate in sorted(base_path.glob(pattern)):
            if candidate.is_file() and candidate.suffix == ".py" and candidate.name != "__init__.py":
                files.append(candidate)
    return files


def load_cleanup_handlers(
    config: CleanupConfig,
    cwd: Optional[Path] = None,
    provider: Optional[CleanupProvider] = None,
) -> LoadedHandlers:
    """Assemble the handler registry for one cleanup.

    Sources in increasing priority: provider methods, ``trailguard_cleanup.py`` at
    the project root, files under the discovery paths, then explicit handler files.
    Configured ``types`` override the provider's default mappings.
    """
    cwd = Path(cwd or Path.cwd())
    registry = HandlerRegistry()
    type_mappings: Dict[str, str] = {}

    if provider is None and config.provider is not None:
        provider = create_provider(config.provider)
    if provider is not None:
        for method_name, handler in provider.methods().items():
            registry.register(f"{provider.name}.{method_name}", handler)
        type_mappings.update(provider.default_type_mappings())

    load_handler_file(cwd / ROOT_HANDLER_FILE, registry)

    if config.discover.enabled:
        for path in _discovered_files(config.discover.paths, config.discover.pattern, cwd):
            load_handler_file(path, registry)

    for handler_path in config.handlers:
        path = Path(handler_path)
        if not path.is_absolute():
            path = cwd / path
        if not load_handler_file(path, registry):
            LOGGER.warning("Could not load cleanup handler file: %s", handler_path)

    type_mappings.update(config.types)
    return LoadedHandlers(registry=registry, type_mappings=type_mappings, provider=provider)


def resolve_handler(
    resource: TrackedResource,
    registry: HandlerRegistry,
    type_mappings: Dict[str, str],
) -> Optional[CleanupHandler]:
    mapped = type_mappings.get(resource.type)
    if mapped:
        handler = registry.get(mapped)
        if handler is not None:
            return handler
    return registry.get(resource.type)
