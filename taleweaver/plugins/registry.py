"""
Plugin Registry for Taleweaver.

Discovers plugin manifests, imports plugin entry modules, records each
plugin in the game state, and runs its init hook exactly once per process.

A plugin that fails at any stage is reported and skipped; it never stops
the remaining plugins from loading.
"""

from __future__ import annotations

import copy
import importlib.util
import logging
import re
import sys
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from taleweaver.core.errors import HookFailure, PluginLoadFailure
from taleweaver.core.state import GameState, PluginWrapper
from taleweaver.core.store import GameStateStore
from taleweaver.plugins.base import HOOKS, call_hook, has_hook
from taleweaver.plugins.context import CapabilityBundle, ExtensionContext, UIRegistry
from taleweaver.plugins.manifest import Manifest, discover_manifests

logger = logging.getLogger(__name__)


class LoadReport(BaseModel):
    """What happened to each discovered plugin during load_all()."""

    loaded: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)
    skipped: list[str] = Field(default_factory=list)
    hook_failures: list[str] = Field(default_factory=list)


class PluginRegistry:
    """
    Loads plugins into a GameStateStore.

    Usage:
        registry = PluginRegistry(store, capabilities, Path("plugins"))
        report = await registry.load_all()
    """

    MODULE_PREFIX = "taleweaver_plugin_"

    def __init__(
        self,
        store: GameStateStore,
        capabilities: CapabilityBundle,
        plugin_dir: Path,
        ui_registry: Optional[UIRegistry] = None,
    ) -> None:
        self.store = store
        self.capabilities = capabilities
        self.plugin_dir = Path(plugin_dir)
        self.ui_registry = ui_registry if ui_registry is not None else UIRegistry()
        # Plugins whose init has been attempted in this process
        self._initialized: set[str] = set()

    def discover(self) -> list[Manifest]:
        """All valid manifests in the plugin directory."""
        return discover_manifests(self.plugin_dir)

    def load(self, manifest: Manifest) -> Any:
        """
        Import the manifest's entry module and create the plugin object.

        Raises:
            PluginLoadFailure: If the module is missing, fails to import,
                or lacks a usable factory
        """
        path = manifest.main_path
        if not path.is_file():
            raise PluginLoadFailure(manifest.name, f"entry module {path} not found")

        module_name = self.MODULE_PREFIX + re.sub(r"\W", "_", manifest.name)
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise PluginLoadFailure(manifest.name, f"cannot import {path}")

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(module_name, None)
            raise PluginLoadFailure(manifest.name, f"{type(e).__name__}: {e}") from e

        factory = getattr(module, manifest.entry, None)
        if not callable(factory):
            raise PluginLoadFailure(manifest.name, f"entry module has no callable '{manifest.entry}'")

        try:
            instance = factory()
        except Exception as e:
            raise PluginLoadFailure(manifest.name, f"{manifest.entry}() raised {type(e).__name__}: {e}") from e

        if not has_hook(instance, "init"):
            raise PluginLoadFailure(manifest.name, "plugin has no init hook")

        hooks = [hook for hook in HOOKS if has_hook(instance, hook)]
        logger.debug("Loaded plugin '%s' with hooks %s", manifest.name, hooks)
        return instance

    def register(
        self,
        draft: GameState,
        name: str,
        instance: Any,
        default_settings: dict[str, Any],
    ) -> PluginWrapper:
        """
        Attach a plugin instance to its wrapper record in `draft`.

        Settings persisted from an earlier session win over the manifest
        defaults. New plugins are appended enabled and unselected.
        """
        wrapper = draft.find_plugin(name)
        if wrapper is None:
            wrapper = PluginWrapper(name=name, settings=copy.deepcopy(default_settings))
            draft.plugins.append(wrapper)
        wrapper.instance = instance
        wrapper.load_error = None
        return wrapper

    async def load_all(self) -> LoadReport:
        """Discover, load, register and initialize every plugin in one mutation."""
        manifests = self.discover()
        report = LoadReport()

        async def updater(draft: GameState) -> None:
            for manifest in manifests:
                await self._load_one(draft, manifest, report)

        await self.store.mutate(updater)

        logger.info(
            "Plugins: %d loaded, %d failed, %d skipped",
            len(report.loaded), len(report.failed), len(report.skipped),
        )
        return report

    async def _load_one(self, draft: GameState, manifest: Manifest, report: LoadReport) -> None:
        name = manifest.name
        existing = draft.find_plugin(name)

        if existing is not None and not existing.enabled:
            logger.info("Plugin '%s' is disabled", name)
            report.skipped.append(name)
            return

        if name in self._initialized:
            if existing is not None and existing.functional:
                report.loaded.append(name)
            else:
                report.skipped.append(name)
            return
        self._initialized.add(name)

        try:
            instance = self.load(manifest)
        except PluginLoadFailure as failure:
            wrapper = self.register(draft, name, None, manifest.settings)
            self._fail(wrapper, failure, report)
            return

        wrapper = self.register(draft, name, instance, manifest.settings)
        context = ExtensionContext(name, self.capabilities.state, self.ui_registry)

        try:
            await call_hook(instance, "init", wrapper.settings, context, self.capabilities)
        except Exception as e:
            logger.debug("init of plugin '%s' failed", name, exc_info=True)
            self._fail(wrapper, PluginLoadFailure(name, f"init failed: {e}"), report)
            return

        if has_hook(instance, "get_backends"):
            try:
                backends = await call_hook(instance, "get_backends") or {}
                for backend_name, backend in backends.items():
                    draft.backends[backend_name] = backend
                    logger.info("Plugin '%s' registered backend '%s'", name, backend_name)
            except Exception as e:
                failure = HookFailure(name, "get_backends", e)
                logger.warning("%s", failure, exc_info=True)
                report.hook_failures.append(str(failure))

        report.loaded.append(name)
        logger.info("Plugin '%s' loaded", name)

    def _fail(self, wrapper: PluginWrapper, failure: PluginLoadFailure, report: LoadReport) -> None:
        """Mark a plugin non-functional, keeping its record and settings."""
        wrapper.load_error = failure.reason
        report.failed[failure.plugin_name] = failure.reason
        logger.warning("%s", failure)
        self.capabilities.ui.show_error("Plugin failed to load", str(failure))
