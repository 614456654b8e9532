"""
Exception taxonomy for Taleweaver.

Failures local to one plugin (load, init, hooks) are contained by the host.
Backend failures are fatal to the single progression step in flight: the
step's draft is discarded and the phase does not advance.
"""

from __future__ import annotations


class TaleweaverError(Exception):
    """Base class for all Taleweaver errors."""


class PluginLoadFailure(TaleweaverError):
    """A plugin module could not be imported, instantiated, or initialized."""

    def __init__(self, plugin_name: str, reason: str) -> None:
        super().__init__(f"Plugin '{plugin_name}' failed to load: {reason}")
        self.plugin_name = plugin_name
        self.reason = reason


class NotRegistered(TaleweaverError):
    """An extension context referenced a plugin that has no wrapper record."""

    def __init__(self, plugin_name: str) -> None:
        super().__init__(f"No settings object found for plugin '{plugin_name}'")
        self.plugin_name = plugin_name


class NotFound(TaleweaverError):
    """A plugin name did not match any wrapper record."""

    def __init__(self, plugin_name: str) -> None:
        super().__init__(f"Plugin with name '{plugin_name}' not found")
        self.plugin_name = plugin_name


class BackendFailure(TaleweaverError):
    """The LLM backend call failed."""


class BackendAborted(BackendFailure):
    """The in-flight backend call was aborted by the user."""

    def __init__(self, message: str = "Backend request aborted") -> None:
        super().__init__(message)


class SchemaValidationFailure(BackendFailure):
    """The backend's structured reply did not match the expected schema."""

    retryable = True


class HookFailure(TaleweaverError):
    """A lifecycle hook raised inside one plugin."""

    def __init__(self, plugin_name: str, hook: str, error: BaseException) -> None:
        super().__init__(f"Plugin '{plugin_name}' failed in {hook}: {error}")
        self.plugin_name = plugin_name
        self.hook = hook
        self.error = error


class NestedMutationError(TaleweaverError):
    """mutate() was called from inside a running updater."""


class PhaseError(TaleweaverError):
    """A phase precondition was not met."""
