"""
Pydantic models for the Taleweaver game document.

This module implements the single mutable document the whole game runs on:
- World, locations, protagonist and characters generated by the backend
- An append-only sequence of narrative events
- Plugin wrapper records (enabled/selected flags and persisted settings)
- GameState as the root aggregate with draft copies and atomic save/load

Live plugin instances and backend objects ride along on the document at
runtime but are excluded from every dump, so only configuration and
settings survive a reload.
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, StringConstraints

Text = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]
Description = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=2000)]
Action = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=200)]


class View(str, Enum):
    """Phases of the game progression state machine, in order."""

    WELCOME = "welcome"
    CONNECTION = "connection"
    GENRE = "genre"
    CHARACTER = "character"
    SCENARIO = "scenario"
    CHAT = "chat"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"


class LocationType(str, Enum):
    TAVERN = "tavern"
    MARKET = "market"
    ROAD = "road"


class World(BaseModel):
    """The generated game world."""

    name: Name
    description: Description


class Location(BaseModel):
    """A place the protagonist can be."""

    name: Name
    type: LocationType
    description: Description


class RawCharacter(BaseModel):
    """A character as the backend generates it, before placement."""

    name: Name
    gender: Gender
    race: Name
    biography: Description


class Character(RawCharacter):
    """A character placed in the world."""

    location_index: int = 0
    character_class: str = ""
    attributes: dict[str, int] = Field(default_factory=dict)

    def to_context_string(self) -> str:
        """Format character for prompt context."""
        return f"{self.name}: {self.biography}"


# =============================================================================
# Events
# =============================================================================

class ActionEvent(BaseModel):
    type: Literal["action"] = "action"
    action: Action


class NarrationEvent(BaseModel):
    type: Literal["narration"] = "narration"
    text: str = Field(default="", max_length=5000)
    location_index: int = 0
    referenced_character_indices: list[int] = Field(default_factory=list)
    summary: Optional[str] = None


class CharacterIntroductionEvent(BaseModel):
    type: Literal["character_introduction"] = "character_introduction"
    character_index: int


class LocationChangeEvent(BaseModel):
    type: Literal["location_change"] = "location_change"
    location_index: int
    present_character_indices: list[int] = Field(default_factory=list)
    summary: Optional[str] = Field(
        default=None,
        description="Summary of the scene that ended with this location change",
    )


class CheckEvent(BaseModel):
    """Outcome of a rule check resolved during a narration step."""

    type: Literal["check"] = "check"
    check_type: str
    difficulty_class: int
    statement: str
    success: Optional[bool] = None


Event = Annotated[
    Union[ActionEvent, NarrationEvent, CharacterIntroductionEvent, LocationChangeEvent, CheckEvent],
    Field(discriminator="type"),
]


# =============================================================================
# Plugins
# =============================================================================

class PluginWrapper(BaseModel):
    """
    Per-plugin record inside the game state.

    `settings` persists across sessions; `instance` and `load_error` are
    rebuilt on every process start and never serialized.
    """

    name: str
    enabled: bool = True
    selected_plugin: bool = False
    settings: dict[str, Any] = Field(default_factory=dict)
    instance: Any = Field(default=None, exclude=True)
    load_error: Optional[str] = Field(default=None, exclude=True)

    @property
    def functional(self) -> bool:
        """True when the plugin loaded and its init completed."""
        return self.instance is not None and self.load_error is None


# =============================================================================
# Root aggregate
# =============================================================================

class GameState(BaseModel):
    """
    The root aggregate for all game data.

    Owned by the GameStateStore; every change goes through its mutate().
    """

    # Connection
    api_url: str = "http://localhost:5001/v1/"
    api_key: str = ""
    model: str = ""
    generation_params: dict[str, Any] = Field(default_factory=lambda: {"temperature": 0.5})
    narration_params: dict[str, Any] = Field(
        default_factory=lambda: {"temperature": 0.6, "min_p": 0.03, "dry_multiplier": 0.8}
    )
    update_interval: int = Field(default=200, description="Progress update throttle in milliseconds")
    log_prompts: bool = False
    log_params: bool = False
    log_responses: bool = False

    # Progression
    view: View = View.WELCOME
    world: World = Field(default_factory=lambda: World(name="[name]", description="[description]"))
    locations: list[Location] = Field(default_factory=list)
    characters: list[Character] = Field(default_factory=list)
    protagonist: Character = Field(
        default_factory=lambda: Character(
            name="[name]", gender=Gender.MALE, race="human", biography="[biography]",
        )
    )

    # Scenario switches
    hidden_destiny: bool = False
    betrayal: bool = False
    opposite_sex_magnet: bool = False
    same_sex_magnet: bool = False
    sexual_content_level: Literal["regular", "explicit", "actively_explicit"] = "regular"
    violent_content_level: Literal["regular", "graphic", "pervasive"] = "regular"
    is_combat: bool = False

    events: list[Event] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)

    # Plugins and backends
    plugins: list[PluginWrapper] = Field(default_factory=list)
    active_backend: str = "default"
    backends: dict[str, Any] = Field(default_factory=dict, exclude=True)

    def find_plugin(self, name: str) -> Optional[PluginWrapper]:
        """Find a plugin wrapper by name."""
        for wrapper in self.plugins:
            if wrapper.name == name:
                return wrapper
        return None

    @property
    def current_location(self) -> Optional[Location]:
        """The location the protagonist is currently at, if any."""
        index = self.protagonist.location_index
        if 0 <= index < len(self.locations):
            return self.locations[index]
        return None

    def draft(self) -> GameState:
        """
        Create a mutable working copy for a mutate() updater.

        Data is deep-copied; live plugin instances and backend objects are
        shared with the committed state so every plugin keeps one instance.
        """
        memo: dict[int, Any] = {}
        for wrapper in self.plugins:
            if wrapper.instance is not None:
                memo[id(wrapper.instance)] = wrapper.instance
        for backend in self.backends.values():
            memo[id(backend)] = backend
        return copy.deepcopy(self, memo)

    def persisted(self) -> dict[str, Any]:
        """The subset of the state that survives a reload."""
        return self.model_dump(mode="json")

    def validate_document(self) -> None:
        """Re-validate the whole document, raising ValidationError if invalid."""
        type(self).model_validate(self.persisted())

    def save(self, path: Path) -> None:
        """
        Atomically save the persisted subset to JSON.

        Uses temp file + rename pattern to prevent data corruption
        if the process is interrupted during write.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(
            suffix=".json.tmp",
            prefix="taleweaver_state_",
            dir=path.parent,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.persisted(), f, indent=2, ensure_ascii=False)
            os.replace(temp_path, path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise

    @classmethod
    def load(cls, path: Path) -> GameState:
        """
        Load a GameState from a JSON file.

        Returns a fresh instance if the file doesn't exist.
        """
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.model_validate(data)
