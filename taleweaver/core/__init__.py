"""Core modules for Taleweaver."""

from .errors import (
    TaleweaverError, PluginLoadFailure, NotRegistered, NotFound,
    BackendFailure, BackendAborted, SchemaValidationFailure,
    HookFailure, NestedMutationError, PhaseError,
)
from .state import Character, GameState, Location, PluginWrapper, View, World
from .store import GameStateStore
from .prompts import Prompt
from .client import Backend, OpenAIBackend, ThinkTagParser
from .rules import (
    CheckDefinition, CheckResult, ClassDefinition, RaceDefinition,
    RuleLogic, GuardedRuleLogic, RuleLogicDispatcher,
)

__all__ = [
    "TaleweaverError", "PluginLoadFailure", "NotRegistered", "NotFound",
    "BackendFailure", "BackendAborted", "SchemaValidationFailure",
    "HookFailure", "NestedMutationError", "PhaseError",
    "Character", "GameState", "Location", "PluginWrapper", "View", "World",
    "GameStateStore", "Prompt",
    "Backend", "OpenAIBackend", "ThinkTagParser",
    "CheckDefinition", "CheckResult", "ClassDefinition", "RaceDefinition",
    "RuleLogic", "GuardedRuleLogic", "RuleLogicDispatcher",
]
