"""
Plugin contract for Taleweaver.

A plugin is a Python module named by its manifest's `main`, exposing a
factory (default name `create_plugin`) that returns the plugin object.

Required hook:
    init(settings, context, capabilities)
        Called exactly once per process, after registration. May be async.

Optional hooks:
    get_backends() -> dict[str, Backend]
        Named backends added to the selectable backend table.
    on_location_change(location, draft)
        Broadcast whenever the protagonist moves. `draft` is the live state
        draft of the running step; writes to it are committed with the step.
    get_rule_logic_provider() -> RuleLogic
        Marks the plugin as a rule provider candidate.

Hooks are looked up by name, so plugins may subclass Plugin or be any
object with the right methods.
"""

from __future__ import annotations

import inspect
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from taleweaver.plugins.context import CapabilityBundle, ExtensionContext

HOOKS = ("init", "get_backends", "on_location_change", "get_rule_logic_provider")


async def maybe_await(value: Any) -> Any:
    """Await `value` if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


def has_hook(instance: Any, name: str) -> bool:
    """True if `instance` exposes a callable hook called `name`."""
    return callable(getattr(instance, name, None))


async def call_hook(instance: Any, name: str, *args: Any) -> Any:
    """Call a hook (sync or async) and return its result."""
    return await maybe_await(getattr(instance, name)(*args))


class Plugin:
    """
    Convenience base class for plugins.

    Subclasses override the hooks they need. Optional hooks are left
    undefined here so has_hook() reports them only when implemented.
    """

    name: str = ""

    def __init__(self) -> None:
        self.settings: dict[str, Any] = {}
        self.context: ExtensionContext | None = None
        self.capabilities: CapabilityBundle | None = None

    async def init(
        self,
        settings: dict[str, Any],
        context: ExtensionContext,
        capabilities: CapabilityBundle,
    ) -> None:
        self.settings = settings
        self.context = context
        self.capabilities = capabilities

