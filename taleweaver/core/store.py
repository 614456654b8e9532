"""
Game State Store for Taleweaver.

Holds the single committed GameState and serializes every change to it.

- get_snapshot() returns the committed state and never waits.
- mutate(updater) admits callers one at a time, in the order they asked,
  hands each a draft copy, and commits the draft only if the updater
  finishes. The lock is held across the whole updater, including any
  backend call it awaits.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

from taleweaver.core.errors import NestedMutationError
from taleweaver.core.state import GameState

logger = logging.getLogger(__name__)

Updater = Callable[[GameState], Awaitable[None]]


class GameStateStore:
    """
    Single source of truth for the game document.

    asyncio.Lock wakes waiters in the order they started waiting, which
    gives mutate() its FIFO admission.
    """

    def __init__(self, initial: Optional[GameState] = None) -> None:
        self._state: GameState = initial if initial is not None else GameState()
        self._lock = asyncio.Lock()
        # Task running the current updater, if any
        self._owner: Optional[asyncio.Task] = None

    def get_snapshot(self) -> GameState:
        """Return the last committed state. Treat it as read-only."""
        return self._state

    @property
    def in_mutation(self) -> bool:
        """True when called from inside this store's running updater."""
        return self._owner is not None and _current_task() is self._owner

    @property
    def busy(self) -> bool:
        """True while some updater holds the lock."""
        return self._lock.locked()

    async def mutate(self, updater: Updater) -> None:
        """
        Run `updater` against a draft of the state and commit it.

        If the updater raises (or is cancelled), the draft is discarded,
        the committed state is untouched, and the error propagates after
        the lock has been released.

        Raises:
            NestedMutationError: if called from inside this store's running
                updater, which would otherwise wait on itself forever.
        """
        if self.in_mutation:
            raise NestedMutationError(
                "mutate() called from inside a running updater; "
                "modify the draft you were given instead"
            )

        async with self._lock:
            draft = self._state.draft()
            self._owner = _current_task()
            try:
                await updater(draft)
            finally:
                self._owner = None
            self._state = draft

    async def reset(self) -> None:
        """Reset the game to its initial state, keeping plugins and connection settings."""

        async def updater(draft: GameState) -> None:
            fresh = GameState(
                api_url=draft.api_url,
                api_key=draft.api_key,
                model=draft.model,
                generation_params=draft.generation_params,
                narration_params=draft.narration_params,
                update_interval=draft.update_interval,
                log_prompts=draft.log_prompts,
                log_params=draft.log_params,
                log_responses=draft.log_responses,
                plugins=draft.plugins,
                active_backend=draft.active_backend,
                backends=draft.backends,
            )
            for field_name in GameState.model_fields:
                setattr(draft, field_name, getattr(fresh, field_name))

        await self.mutate(updater)
        logger.info("Game state reset")

    def save(self, path: Path) -> None:
        """Persist the committed state."""
        self._state.save(path)

    @classmethod
    def load(cls, path: Path) -> GameStateStore:
        """Create a store from a saved state file (or a fresh state)."""
        return cls(GameState.load(path))


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        # No running loop
        return None
