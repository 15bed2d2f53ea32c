"""Feed fetcher registry with plugin discovery.

Built-in transports (http, ftp) register themselves on import. Hosts can
add vendor-specific transports without touching PYTHONPATH:

Usage:
    from vendorsync.fetchers import fetcher_registry
    fetcher_registry.discover_plugins("/srv/vendorsync/plugins")

    fetcher = fetcher_registry.create(schema, timeout=120)
    result = await fetcher.fetch(credentials)
"""

from __future__ import annotations

import importlib.util
import logging
import sys
from pathlib import Path
from typing import Callable, Dict, Optional, Type

from ..errors import VendorSyncError
from ..vendors.config import VendorSchema
from .base import FeedFetcher

logger = logging.getLogger(__name__)


class FetcherRegistry:
    """Maps transport names (``source.type`` in vendor TOML) to fetchers."""

    def __init__(self):
        self._fetchers: Dict[str, Type[FeedFetcher]] = {}
        self._discovered_paths: set[str] = set()

    # =========================================================================
    # Decorator Registration
    # =========================================================================

    def register(self, transport: str) -> Callable[[Type[FeedFetcher]], Type[FeedFetcher]]:
        """Decorator to register a fetcher class.

        Example:
            @fetcher_registry.register("sftp")
            class SftpFeedFetcher(FeedFetcher):
                async def fetch(self, credentials) -> FetchResult: ...
        """

        def decorator(cls: Type[FeedFetcher]) -> Type[FeedFetcher]:
            name = transport.lower()
            cls.transport = name
            self._fetchers[name] = cls
            logger.debug(f"Registered fetcher: {name} -> {cls.__name__}")
            return cls

        return decorator

    # =========================================================================
    # Auto-Discovery
    # =========================================================================

    def discover_plugins(self, plugin_dir: str | Path) -> int:
        """Load fetcher plugins from ``plugin_dir/*.py``.

        Each module registers under its file stem, using either the
        ``{Stem}Fetcher`` class or the first FeedFetcher subclass it defines.

        Returns:
            Number of plugins discovered.
        """
        plugin_path = Path(plugin_dir)
        path_str = str(plugin_path.resolve())

        if path_str in self._discovered_paths:
            logger.debug(f"Already discovered: {plugin_path}")
            return 0

        if not plugin_path.exists():
            logger.warning(f"Plugin directory not found: {plugin_path}")
            return 0

        discovered = 0
        for py_file in sorted(plugin_path.glob("*.py")):
            if py_file.name.startswith("_"):
                continue

            transport = py_file.stem
            try:
                cls = self._load_fetcher_class(py_file, transport)
            except Exception as e:
                logger.warning(f"Failed to load plugin from {py_file}: {e}")
                continue

            if cls is None:
                logger.warning(f"No FeedFetcher subclass in {py_file}")
                continue
            self.register(transport)(cls)
            discovered += 1

        self._discovered_paths.add(path_str)
        logger.info(f"Discovered {discovered} fetcher plugins from {plugin_path}")
        return discovered

    def _load_fetcher_class(
        self, py_file: Path, transport: str
    ) -> Optional[Type[FeedFetcher]]:
        spec = importlib.util.spec_from_file_location(
            f"vendorsync_plugin_{transport}", py_file
        )
        if spec is None or spec.loader is None:
            return None
        module = importlib.util.module_from_spec(spec)
        sys.modules[spec.name] = module
        spec.loader.exec_module(module)

        expected = self._code_to_classname(transport, "Fetcher")
        candidate = getattr(module, expected, None)
        if isinstance(candidate, type) and issubclass(candidate, FeedFetcher):
            return candidate
        for attr_name in dir(module):
            attr = getattr(module, attr_name)
            if (
                isinstance(attr, type)
                and issubclass(attr, FeedFetcher)
                and attr is not FeedFetcher
                and attr.__module__ == module.__name__
            ):
                return attr
        return None

    @staticmethod
    def _code_to_classname(code: str, suffix: str) -> str:
        """e.g. "vendor_api" + "Fetcher" -> "VendorApiFetcher"."""
        return "".join(part.capitalize() for part in code.split("_")) + suffix

    # =========================================================================
    # Getters
    # =========================================================================

    def get(self, transport: str) -> Type[FeedFetcher]:
        try:
            return self._fetchers[transport.lower()]
        except KeyError:
            raise VendorSyncError(
                f"No fetcher registered for transport '{transport}'",
                user_message=f"Feed transport '{transport}' is not supported",
            ) from None

    def create(self, schema: VendorSchema, timeout: Optional[float] = None) -> FeedFetcher:
        """Instantiate the fetcher for a vendor's declared source."""
        return self.get(schema.source.type)(schema, timeout=timeout)

    def list_transports(self) -> list[str]:
        return sorted(self._fetchers)


# Global singleton
fetcher_registry = FetcherRegistry()


__all__ = ["FetcherRegistry", "fetcher_registry"]
