"""
Capabilities and extension contexts handed to plugins.

The CapabilityBundle is built once at startup and shared by every plugin.
Its handles call through to whatever is current at call time (the active
backend, the committed state) instead of holding copies.

Each plugin also gets its own ExtensionContext, bound to the plugin's
name, for writing its settings and contributing UI fragments.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import ModuleType
from typing import Any, Callable, Literal, Optional, TypeVar, Union

import pydantic
from pydantic import BaseModel
from rich.console import Console, RenderableType

from taleweaver.core.client import Backend, OpenAIBackend, TokenCallback
from taleweaver.core.errors import BackendAborted, NotFound, NotRegistered
from taleweaver.core.prompts import Prompt
from taleweaver.core.state import GameState
from taleweaver.core.store import GameStateStore, Updater
from taleweaver.services.dice import DiceRoller

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


# =============================================================================
# Capability handles
# =============================================================================

@dataclass(frozen=True)
class LibraryAccess:
    """Shared library objects plugins may use instead of bringing their own."""

    dice: DiceRoller = field(default_factory=DiceRoller)
    console: Console = field(default_factory=Console)
    # The host's pydantic, for plugins that define their own models
    models: ModuleType = pydantic


class BackendAccess(Backend):
    """
    The backend as plugins and the engine see it.

    Every call resolves `state.backends[state.active_backend]` anew and
    falls back to the built-in OpenAI-compatible backend, so switching
    backends is observed immediately.
    """

    def __init__(self, store: GameStateStore, default: Optional[Backend] = None) -> None:
        self._store = store
        self.default = default or OpenAIBackend(store.get_snapshot)

    def resolve(self, state: Optional[GameState] = None) -> Backend:
        """The backend currently configured in `state` (default: committed state)."""
        if state is None:
            state = self._store.get_snapshot()
        backend = state.backends.get(state.active_backend)
        if backend is None:
            if state.active_backend != "default":
                logger.warning("Backend '%s' is not available, using default", state.active_backend)
            return self.default
        return backend

    async def get_narration(self, prompt: Prompt, on_token: Optional[TokenCallback] = None) -> str:
        return await self.resolve().get_narration(prompt, on_token)

    async def get_object(
        self,
        prompt: Prompt,
        schema: type[T],
        on_token: Optional[TokenCallback] = None,
    ) -> T:
        return await self.resolve().get_object(prompt, schema, on_token)

    def abort(self) -> None:
        # Abort both in case the selection changed mid-request
        active = self.resolve()
        active.abort()
        if active is not self.default:
            self.default.abort()

    def is_abort_error(self, error: BaseException) -> bool:
        return isinstance(error, BackendAborted) or self.resolve().is_abort_error(error)


class StateAccess:
    """State handle: snapshot reads plus the plugin-scoped writes."""

    def __init__(self, store: GameStateStore) -> None:
        self._store = store

    def get_snapshot(self) -> GameState:
        return self._store.get_snapshot()

    async def mutate(self, updater: Updater) -> None:
        await self._store.mutate(updater)

    async def save_plugin_settings(self, plugin_name: str, settings: dict[str, Any]) -> None:
        """
        Replace a plugin's persisted settings.

        Raises:
            NotRegistered: If no wrapper exists for `plugin_name`
            NestedMutationError: If called from inside an updater (e.g. init)
        """

        async def updater(draft: GameState) -> None:
            wrapper = draft.find_plugin(plugin_name)
            if wrapper is None:
                raise NotRegistered(plugin_name)
            wrapper.settings = dict(settings)

        await self._store.mutate(updater)

    async def set_plugin_selected(self, plugin_name: str, selected: bool) -> None:
        """
        Mark a plugin as the active rule provider, or unmark it.

        Selecting a plugin clears the flag on every other plugin, so at most
        one is ever selected.

        Raises:
            NotFound: If no wrapper exists for `plugin_name`
        """

        async def updater(draft: GameState) -> None:
            wrapper = draft.find_plugin(plugin_name)
            if wrapper is None:
                raise NotFound(plugin_name)
            if selected:
                for other in draft.plugins:
                    other.selected_plugin = False
            wrapper.selected_plugin = selected

        await self._store.mutate(updater)
        logger.info("Plugin '%s' %s", plugin_name, "selected" if selected else "deselected")


class UIFeedback:
    """
    Progress and error reporting.

    This implementation only logs; the CLI supplies one that renders.
    """

    def update_progress(self, title: str, message: str = "", token_count: int = 0) -> None:
        logger.debug("%s: %s (%d tokens)", title, message, token_count)

    def show_error(self, title: str, message: str) -> None:
        logger.error("%s: %s", title, message)

    def log(self, message: str) -> None:
        logger.info("%s", message)


@dataclass(frozen=True)
class CapabilityBundle:
    library: LibraryAccess
    backend: BackendAccess
    state: StateAccess
    ui: UIFeedback


def create_capabilities(
    store: GameStateStore,
    ui: Optional[UIFeedback] = None,
    backend: Optional[Backend] = None,
    library: Optional[LibraryAccess] = None,
) -> CapabilityBundle:
    """Build the bundle shared by every plugin."""
    return CapabilityBundle(
        library=library or LibraryAccess(),
        backend=BackendAccess(store, backend),
        state=StateAccess(store),
        ui=ui or UIFeedback(),
    )


# =============================================================================
# UI registry
# =============================================================================

# A static renderable, or a callable that renders from the current state
UIContent = Union[RenderableType, Callable[[GameState], RenderableType]]


@dataclass(frozen=True)
class UIFragment:
    plugin_name: str
    kind: Literal["character", "backend"]
    label: str
    content: UIContent

    def render(self, state: GameState) -> RenderableType:
        if callable(self.content):
            return self.content(state)
        return self.content


class UIRegistry:
    """
    Append-only list of plugin UI fragments.

    Duplicates are kept; views that care filter them with unique().
    """

    def __init__(self) -> None:
        self._fragments: list[UIFragment] = []

    def add(self, fragment: UIFragment) -> None:
        self._fragments.append(fragment)

    def fragments(self, kind: Optional[str] = None) -> list[UIFragment]:
        return [f for f in self._fragments if kind is None or f.kind == kind]

    def unique(self, kind: Optional[str] = None) -> list[UIFragment]:
        """Fragments with repeated (plugin, kind, label) entries dropped."""
        seen: set[tuple[str, str, str]] = set()
        result: list[UIFragment] = []
        for fragment in self.fragments(kind):
            key = (fragment.plugin_name, fragment.kind, fragment.label)
            if key not in seen:
                seen.add(key)
                result.append(fragment)
        return result

    def __len__(self) -> int:
        return len(self._fragments)


# =============================================================================
# Extension context
# =============================================================================

class ExtensionContext:
    """Per-plugin handle, bound to the owning plugin's name."""

    def __init__(self, plugin_name: str, state: StateAccess, ui_registry: UIRegistry) -> None:
        self._plugin_name = plugin_name
        self._state = state
        self._ui_registry = ui_registry

    @property
    def plugin_name(self) -> str:
        return self._plugin_name

    async def save_settings(self, settings: dict[str, Any]) -> None:
        """
        Replace this plugin's settings.

        Must not be called from init or from a hook that receives a draft;
        write to the settings dict or the draft there instead.
        """
        await self._state.save_plugin_settings(self._plugin_name, settings)

    async def set_plugin_selected(self, name: str, is_selected: bool) -> None:
        await self._state.set_plugin_selected(name, is_selected)

    def add_character_ui(self, label: str, content: UIContent) -> None:
        self._ui_registry.add(UIFragment(self._plugin_name, "character", label, content))

    def add_backend_ui(self, label: str, content: UIContent) -> None:
        self._ui_registry.add(UIFragment(self._plugin_name, "backend", label, content))
