"""
Rule logic for Taleweaver.

A rule provider customizes game mechanics at fixed points of the
narration pipeline: protagonist creation, action checks, check
resolution, consequences, suggested actions, and narrative guidance.

RuleLogic is the built-in default provider and the base class plugin
providers are expected to extend. RuleLogicDispatcher picks the active
provider for each progression step; GuardedRuleLogic wraps it so that a
failing plugin method falls back to the default answer instead of
aborting the step.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Generic, Optional, Sequence, TypeVar

from pydantic import BaseModel, Field

from taleweaver.core.errors import BackendFailure, HookFailure
from taleweaver.plugins.base import has_hook, maybe_await
from taleweaver.services.dice import DiceRoller

if TYPE_CHECKING:
    from taleweaver.core.prompts import Prompt
    from taleweaver.core.state import Character, GameState
    from taleweaver.core.store import GameStateStore

logger = logging.getLogger(__name__)

R = TypeVar("R")

ATTRIBUTES = ("strength", "dexterity", "constitution", "intelligence", "wisdom", "charisma")


class CheckDefinition(BaseModel):
    """A required skill, attribute or attack test. Never persisted."""

    type: str
    difficulty_class: int = Field(default=10, ge=1)
    modifiers: list[str] = Field(default_factory=list)


class CheckResult(BaseModel):
    """Outcome of resolving one check."""

    statement: str
    success: Optional[bool] = None
    roll: Optional[int] = None
    total: Optional[int] = None
    check: Optional[CheckDefinition] = None


class RaceDefinition(BaseModel):
    name: str
    description: str = ""
    attribute_bonuses: dict[str, int] = Field(default_factory=dict)


class ClassDefinition(BaseModel):
    name: str
    description: str = ""
    hit_die: int = 8
    subclasses: list[str] = Field(default_factory=list)


def ability_modifier(score: int) -> int:
    """Standard d20 ability modifier."""
    return (score - 10) // 2


class RuleLogic:
    """
    Built-in rule provider.

    Plugin providers subclass this and override what they need; any
    method may be sync or async.
    """

    # Checked in order; the first pattern found in the action wins
    ACTION_CHECKS: tuple[tuple[str, str, int], ...] = (
        (r"\b(lock|sneak|steal|pickpocket|hide)\b", "dexterity", 15),
        (r"\b(attack|strike|stab|shoot|punch|swing)\b", "to-hit", 12),
        (r"\b(climb|lift|push|force|break|jump)\b", "strength", 12),
        (r"\b(persuade|convince|charm|intimidate|lie|deceive|bargain|haggle)\b", "charisma", 13),
        (r"\b(search|inspect|examine|listen|track)\b", "wisdom", 12),
        (r"\b(recall|decipher|study|identify)\b", "intelligence", 12),
    )

    # Attribute used for checks whose type is not an attribute name
    CHECK_ATTRIBUTES: dict[str, str] = {
        "to-hit": "strength",
        "initiative": "dexterity",
    }

    DEFAULT_SCORE = 10

    def __init__(self, dice: Optional[DiceRoller] = None) -> None:
        self.dice = dice or DiceRoller()

    def get_biography_guidance(self, state: GameState) -> str:
        return ""

    def modify_protagonist_prompt(self, prompt: Prompt) -> Prompt:
        return prompt

    def get_available_races(self) -> list[RaceDefinition]:
        return []

    def get_available_classes(self) -> list[ClassDefinition]:
        return []

    async def get_action_checks(
        self,
        text: str,
        state: GameState,
        source: str = "action",
    ) -> list[CheckDefinition]:
        """
        Checks required by a piece of text.

        `source` is "action" for the player's action and "narration" for
        the latest narration. The default only checks actions.
        """
        if source != "action" or not text:
            return []
        lowered = text.lower()
        for pattern, check_type, difficulty in self.ACTION_CHECKS:
            if re.search(pattern, lowered):
                return [CheckDefinition(type=check_type, difficulty_class=difficulty)]
        return []

    def attribute_for(self, check: CheckDefinition) -> Optional[str]:
        check_type = check.type.lower()
        if check_type in ATTRIBUTES:
            return check_type
        if check.modifiers and check.modifiers[0].lower() in ATTRIBUTES:
            return check.modifiers[0].lower()
        return self.CHECK_ATTRIBUTES.get(check_type)

    async def resolve_check(
        self,
        check: CheckDefinition,
        character: Character,
        state: GameState,
        action: Optional[str] = None,
    ) -> CheckResult:
        """Roll a d20 plus the character's attribute modifier against the DC."""
        attribute = self.attribute_for(check)
        score = character.attributes.get(attribute, self.DEFAULT_SCORE) if attribute else self.DEFAULT_SCORE
        modifier = ability_modifier(score)
        roll = self.dice.d20()
        total = roll + modifier
        success = total >= check.difficulty_class
        verb = "successfully passed" if success else "failed"
        statement = (
            f"{character.name} {verb} the {check.type} check "
            f"(DC {check.difficulty_class}) with a roll of {roll} and a total of {total}."
        )
        return CheckResult(statement=statement, success=success, roll=roll, total=total, check=check)

    async def handle_consequence(
        self,
        result: CheckResult,
        state: GameState,
        action: Optional[str] = None,
    ) -> None:
        """Apply state changes that follow from a resolved check."""

    async def get_actions(self, state: GameState) -> list[str]:
        """Rule-specific actions offered alongside the generated suggestions."""
        return []

    async def get_narrative_guidance(
        self,
        event_type: str,
        state: GameState,
        results: Sequence[CheckResult] = (),
        action: Optional[str] = None,
    ) -> list[str]:
        """Statements appended to the narration prompt."""
        return [result.statement for result in results if result.statement]


# =============================================================================
# Failure boundary
# =============================================================================

@dataclass(frozen=True)
class Outcome(Generic[R]):
    """
    Result of one guarded provider call.

    `source` is the provider that produced `value`: the plugin name, or
    "default" when the plugin failed (then `error` holds the failure) or
    the default provider was active in the first place.
    """

    value: R
    source: str
    error: Optional[HookFailure] = None

    @property
    def fell_back(self) -> bool:
        return self.error is not None


def _as_check(value: Any) -> CheckDefinition:
    if isinstance(value, CheckDefinition):
        return value
    return CheckDefinition.model_validate(value)


def _as_checks(value: Any) -> list[CheckDefinition]:
    return [_as_check(item) for item in (value or [])]


def _as_result(value: Any) -> CheckResult:
    if isinstance(value, CheckResult):
        return value
    if isinstance(value, str):
        return CheckResult(statement=value)
    return CheckResult.model_validate(value)


def _as_races(value: Any) -> list[RaceDefinition]:
    return [
        RaceDefinition(name=item) if isinstance(item, str) else RaceDefinition.model_validate(item)
        for item in (value or [])
    ]


def _as_classes(value: Any) -> list[ClassDefinition]:
    return [
        ClassDefinition(name=item) if isinstance(item, str) else ClassDefinition.model_validate(item)
        for item in (value or [])
    ]


def _as_strings(value: Any) -> list[str]:
    return [str(item) for item in (value or []) if item]


class GuardedRuleLogic:
    """
    Per-call failure boundary around a rule provider.

    Every method is async and returns an Outcome. If the provider is
    missing a method, or the method raises anything other than a
    BackendFailure, the default provider answers instead. Backend failures
    propagate because they are fatal to the step.
    """

    def __init__(self, name: str, provider: Any, default: RuleLogic) -> None:
        self.name = name
        self.provider = provider
        self.default = default

    @property
    def is_default(self) -> bool:
        return self.provider is self.default

    async def _call(self, method: str, coerce: Callable[[Any], R], *args: Any) -> Outcome[R]:
        if self.is_default or not has_hook(self.provider, method):
            value = await maybe_await(getattr(self.default, method)(*args))
            return Outcome(coerce(value), "default" if self.is_default else self.name)

        try:
            value = coerce(await maybe_await(getattr(self.provider, method)(*args)))
            return Outcome(value, self.name)
        except BackendFailure:
            raise
        except Exception as e:
            failure = HookFailure(self.name, method, e)
            logger.warning("%s; using default rule logic", failure, exc_info=True)
            value = await maybe_await(getattr(self.default, method)(*args))
            return Outcome(coerce(value), "default", failure)

    async def get_biography_guidance(self, state: GameState) -> Outcome[str]:
        return await self._call("get_biography_guidance", lambda v: str(v or ""), state)

    async def modify_protagonist_prompt(self, prompt: Prompt) -> Outcome[Prompt]:
        return await self._call("modify_protagonist_prompt", lambda v: v or prompt, prompt)

    async def get_available_races(self) -> Outcome[list[RaceDefinition]]:
        return await self._call("get_available_races", _as_races)

    async def get_available_classes(self) -> Outcome[list[ClassDefinition]]:
        return await self._call("get_available_classes", _as_classes)

    async def get_action_checks(
        self, text: str, state: GameState, source: str = "action"
    ) -> Outcome[list[CheckDefinition]]:
        return await self._call("get_action_checks", _as_checks, text, state, source)

    async def resolve_check(
        self,
        check: CheckDefinition,
        character: Character,
        state: GameState,
        action: Optional[str] = None,
    ) -> Outcome[CheckResult]:
        outcome = await self._call("resolve_check", _as_result, check, character, state, action)
        if outcome.value.check is None:
            outcome.value.check = check
        return outcome

    async def handle_consequence(
        self, result: CheckResult, state: GameState, action: Optional[str] = None
    ) -> Outcome[None]:
        return await self._call("handle_consequence", lambda v: None, result, state, action)

    async def get_actions(self, state: GameState) -> Outcome[list[str]]:
        return await self._call("get_actions", _as_strings, state)

    async def get_narrative_guidance(
        self,
        event_type: str,
        state: GameState,
        results: Sequence[CheckResult] = (),
        action: Optional[str] = None,
    ) -> Outcome[list[str]]:
        return await self._call("get_narrative_guidance", _as_strings, event_type, state, results, action)


# =============================================================================
# Dispatcher
# =============================================================================

class RuleLogicDispatcher:
    """
    Chooses the rule provider for a progression step.

    Resolved on every call so a selection change takes effect on the very
    next step.
    """

    def __init__(self, store: GameStateStore, default: Optional[RuleLogic] = None) -> None:
        self.store = store
        self.default = default or RuleLogic()

    def get_active(self, state: Optional[GameState] = None) -> GuardedRuleLogic:
        """
        Return the first enabled, selected, functional provider plugin in
        list order, or the default provider.

        Args:
            state: The state to read; pass the draft when called from
                inside an updater. Defaults to the committed snapshot.
        """
        if state is None:
            state = self.store.get_snapshot()

        for wrapper in state.plugins:
            if not (wrapper.enabled and wrapper.selected_plugin and wrapper.functional):
                continue
            if not has_hook(wrapper.instance, "get_rule_logic_provider"):
                continue
            try:
                provider = wrapper.instance.get_rule_logic_provider()
            except Exception as e:
                logger.warning("%s", HookFailure(wrapper.name, "get_rule_logic_provider", e), exc_info=True)
                continue
            if provider is None:
                continue
            logger.debug("Using rule logic from plugin '%s'", wrapper.name)
            return GuardedRuleLogic(wrapper.name, provider, self.default)

        logger.debug("Using default rule logic")
        return GuardedRuleLogic("default", self.default, self.default)
