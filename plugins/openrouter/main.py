"""
OpenRouter backend for Taleweaver.

Registers a backend named "openrouter". Select it by setting the game
state's `active_backend` to "openrouter". The API key is read from the
environment variable named by the `api_key_env` setting.
"""

from __future__ import annotations

import os
from typing import Any

from taleweaver.core.client import ConnectionSettings, OpenAIBackend
from taleweaver.plugins.base import Plugin

PLUGIN_NAME = "openrouter"
BACKEND_NAME = "openrouter"


class OpenRouterPlugin(Plugin):
    name = PLUGIN_NAME

    def __init__(self) -> None:
        super().__init__()
        self.backend = OpenAIBackend(settings_source=self.connection_settings)

    async def init(self, settings: dict[str, Any], context: Any, capabilities: Any) -> None:
        await super().init(settings, context, capabilities)
        context.add_backend_ui("OpenRouter", self.render)

    def _current_settings(self) -> dict[str, Any]:
        if self.capabilities is None:
            return self.settings
        wrapper = self.capabilities.state.get_snapshot().find_plugin(PLUGIN_NAME)
        return wrapper.settings if wrapper is not None else self.settings

    def connection_settings(self) -> ConnectionSettings:
        """Plugin settings for the endpoint, game state for sampling and logging."""
        settings = self._current_settings()
        state = self.capabilities.state.get_snapshot() if self.capabilities else None
        return ConnectionSettings(
            api_url=settings.get("api_url", "https://openrouter.ai/api/v1"),
            api_key=os.getenv(settings.get("api_key_env", "OPENROUTER_API_KEY"), ""),
            model=settings.get("model", ""),
            generation_params=dict(state.generation_params) if state else {},
            narration_params=dict(state.narration_params) if state else {},
            log_prompts=state.log_prompts if state else False,
            log_params=state.log_params if state else False,
            log_responses=state.log_responses if state else False,
        )

    def render(self, state):
        settings = state.find_plugin(PLUGIN_NAME).settings
        active = " (active)" if state.active_backend == BACKEND_NAME else ""
        return f"{settings.get('model', '?')} via {settings.get('api_url', '?')}{active}"

    def get_backends(self) -> dict[str, OpenAIBackend]:
        return {BACKEND_NAME: self.backend}


def create_plugin() -> OpenRouterPlugin:
    return OpenRouterPlugin()
