"""Plugin runtime for Taleweaver."""

from .base import Plugin, call_hook, has_hook, maybe_await
from .manifest import Manifest, discover_manifests
from .context import (
    BackendAccess, CapabilityBundle, ExtensionContext, LibraryAccess,
    StateAccess, UIFeedback, UIFragment, UIRegistry, create_capabilities,
)
from .registry import LoadReport, PluginRegistry

__all__ = [
    "Plugin", "call_hook", "has_hook", "maybe_await",
    "Manifest", "discover_manifests",
    "BackendAccess", "CapabilityBundle", "ExtensionContext", "LibraryAccess",
    "StateAccess", "UIFeedback", "UIFragment", "UIRegistry", "create_capabilities",
    "LoadReport", "PluginRegistry",
]
