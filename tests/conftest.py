"""
Shared fixtures for Taleweaver tests.

FakeBackend replays scripted replies per response schema, so engine
tests never touch the network.
"""

import asyncio
import json
import random
import textwrap
from collections import defaultdict, deque

import pytest

from taleweaver.core.client import Backend
from taleweaver.core.errors import BackendAborted, BackendFailure
from taleweaver.core.prompts import (
    ActionOptions,
    CharacterRoster,
    ConnectionProbe,
    NewLocationInfo,
    YesNo,
)
from taleweaver.core.state import GameState, Location, RawCharacter, World
from taleweaver.core.store import GameStateStore
from taleweaver.plugins.context import LibraryAccess, UIFeedback, create_capabilities
from taleweaver.services.dice import DiceRoller


class FakeBackend(Backend):
    """
    Scripted backend.

    Replies are queued per schema (or "narration"). With `block` set, the
    next request waits until abort() is called and then raises
    BackendAborted.
    """

    def __init__(self):
        self.replies = defaultdict(deque)
        self.requests = []
        self.block = False
        self.started = asyncio.Event()
        self._release = asyncio.Event()
        self.aborted = 0

    def queue(self, key, *replies):
        self.replies[key].extend(replies)
        return self

    async def _wait_if_blocked(self):
        if self.block:
            self.started.set()
            await self._release.wait()
            self._release.clear()
            raise BackendAborted()

    def _next(self, key):
        if not self.replies[key]:
            raise BackendFailure(f"No scripted reply for {key}")
        reply = self.replies[key].popleft()
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def get_narration(self, prompt, on_token=None):
        self.requests.append(("narration", prompt))
        await self._wait_if_blocked()
        text = self._next("narration")
        if on_token:
            on_token(text, 1)
        return text

    async def get_object(self, prompt, schema, on_token=None):
        self.requests.append((schema, prompt))
        await self._wait_if_blocked()
        return self._next(schema)

    def abort(self):
        self.aborted += 1
        self._release.set()

    def prompts_for(self, key):
        return [prompt for kind, prompt in self.requests if kind == key]


class RecordingUI(UIFeedback):
    """UI feedback that remembers everything it was shown."""

    def __init__(self):
        self.progress = []
        self.errors = []
        self.messages = []

    def update_progress(self, title, message="", token_count=0):
        self.progress.append((title, message, token_count))

    def show_error(self, title, message):
        self.errors.append((title, message))

    def log(self, message):
        self.messages.append(message)


def make_world():
    return World(name="Varnhal", description="A cold land of fjords and old oaths.")


def make_location(name="The Gilded Goose", type="tavern"):
    return Location(name=name, type=type, description=f"{name}, warm and crowded.")


def make_character(name, race="human", gender="female"):
    return RawCharacter(name=name, gender=gender, race=race, biography=f"{name} has seen a lot.")


def make_roster(*names):
    names = names or ("Ada Brook", "Bram Holt", "Cora Vell", "Dain Stone", "Edda Fair")
    return CharacterRoster(characters=[make_character(name) for name in names])


def make_actions(*actions):
    return ActionOptions(actions=list(actions or ("Order a drink", "Talk to Ada", "Leave the tavern")))


def script_setup(backend, protagonist_name="Rowan"):
    """Queue replies for connection, character and scenario phases."""
    backend.queue(ConnectionProbe, ConnectionProbe(reply="taleweaver"))
    backend.queue(World, make_world())
    backend.queue(RawCharacter, make_character(protagonist_name, gender="male"))
    backend.queue(Location, make_location())
    backend.queue(CharacterRoster, make_roster())
    return backend


def script_turn(backend, narration, same_location=True, actions=None):
    """Queue replies for one chat step without a location change."""
    backend.queue("narration", narration)
    backend.queue(YesNo, YesNo(answer="yes" if same_location else "no"))
    backend.queue(ActionOptions, actions or make_actions())
    return backend


def script_move(backend, narration, arrival, location, accompanying=(), roster=None, actions=None):
    """Queue replies for one chat step that changes location."""
    backend.queue("narration", narration)
    backend.queue(YesNo, YesNo(answer="no"))
    backend.queue(
        NewLocationInfo,
        NewLocationInfo(new_location=location, accompanying_characters=list(accompanying)),
    )
    backend.queue(
        CharacterRoster,
        roster or make_roster("Fenn Ash", "Gwyn Roe", "Hale Mott", "Ivo Lark", "Jora Pike"),
    )
    backend.queue("narration", arrival)
    backend.queue(ActionOptions, actions or make_actions())
    return backend


def write_plugin(plugin_dir, name, source, settings=None, main="main.py"):
    """Create a plugin directory with a manifest and an entry module."""
    directory = plugin_dir / name
    directory.mkdir(parents=True, exist_ok=True)
    manifest = {"name": name, "main": main, "settings": settings or {}}
    (directory / "manifest.json").write_text(json.dumps(manifest), encoding="utf-8")
    (directory / main).write_text(textwrap.dedent(source), encoding="utf-8")
    return directory


@pytest.fixture
def store():
    return GameStateStore(GameState())


@pytest.fixture
def ui():
    return RecordingUI()


@pytest.fixture
def capabilities(store, ui):
    library = LibraryAccess(dice=DiceRoller(random.Random(7)))
    return create_capabilities(store, ui=ui, library=library)


@pytest.fixture
def plugin_dir(tmp_path):
    directory = tmp_path / "plugins"
    directory.mkdir()
    return directory
