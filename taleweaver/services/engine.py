"""
Game Progression Engine for Taleweaver.

Walks the game through its phases:

    welcome -> connection -> genre -> character -> scenario -> chat

Every call to advance() runs inside exactly one store mutation. If any
backend call fails (or is aborted) the whole step is rolled back and the
phase does not change.

In the chat phase each step:
1. Records the player's action
2. Resolves rule checks for the latest narration and the action
3. Narrates, with the check outcomes appended to the prompt
4. Asks whether the protagonist left the location, and if so creates the
   new location and its characters and narrates the arrival
5. Suggests the next actions
"""

from __future__ import annotations

import logging
import re
import time
from typing import TYPE_CHECKING, Optional

from taleweaver.core.errors import BackendFailure, HookFailure, PhaseError
from taleweaver.core.prompts import (
    CONNECTION_PROBE_PROMPT,
    GENERATE_WORLD_PROMPT,
    ActionOptions,
    CharacterRoster,
    ConnectionProbe,
    NewLocationInfo,
    YesNo,
    check_if_same_location_prompt,
    generate_actions_prompt,
    generate_new_characters_prompt,
    generate_new_location_prompt,
    generate_protagonist_prompt,
    generate_starting_characters_prompt,
    generate_starting_location_prompt,
    narrate_prompt,
)
from taleweaver.core.rules import CheckResult, GuardedRuleLogic, RuleLogicDispatcher
from taleweaver.core.state import (
    ActionEvent,
    Character,
    CharacterIntroductionEvent,
    CheckEvent,
    GameState,
    Location,
    LocationChangeEvent,
    NarrationEvent,
    RawCharacter,
    View,
    World,
)
from taleweaver.plugins.base import call_hook, has_hook
from taleweaver.plugins.context import UIFeedback
from taleweaver.services.context import ContextBuilder

if TYPE_CHECKING:
    from taleweaver.core.client import Backend
    from taleweaver.core.store import GameStateStore

logger = logging.getLogger(__name__)

# Character names are bolded in narration, optionally with a possessive
CHARACTER_REFERENCE = re.compile(r"\*\*(.+?)(?:'s?)?\*\*")

PREVIOUS_VIEW = {
    View.CONNECTION: View.WELCOME,
    View.GENRE: View.CONNECTION,
    View.CHARACTER: View.GENRE,
    View.SCENARIO: View.CHARACTER,
}


class ProgressReporter:
    """Forwards backend progress to UI feedback, throttled to `interval_ms`."""

    def __init__(self, ui: UIFeedback, interval_ms: int) -> None:
        self.ui = ui
        self.interval_ms = interval_ms
        self.title = ""
        self.message = ""
        self._last: Optional[float] = None

    def step(self, title: str, message: str = "") -> None:
        self.title = title
        self.message = message
        self._last = time.monotonic()
        self.ui.update_progress(title, message, 0)

    def on_token(self, token: str, count: int) -> None:
        now = time.monotonic()
        if self._last is not None and count > 0 and (now - self._last) * 1000 < self.interval_ms:
            return
        self._last = now
        self.ui.update_progress(self.title, self.message, count)


def find_referenced_characters(text: str, characters: list[Character]) -> list[int]:
    """Indices of characters named in bold, by full or first name, in order of appearance."""
    indices: list[int] = []
    for match in CHARACTER_REFERENCE.finditer(text):
        name = match.group(1)
        for index, character in enumerate(characters):
            if character.name == name or character.name.split(" ")[0] == name:
                if index not in indices:
                    indices.append(index)
                break
    return indices


class GameEngine:
    """
    Advances the game state one step at a time.

    Usage:
        engine = GameEngine(store, RuleLogicDispatcher(store), backend, ui)
        await engine.advance()              # setup phases
        await engine.advance("Order a drink")  # chat phase
    """

    def __init__(
        self,
        store: GameStateStore,
        dispatcher: RuleLogicDispatcher,
        backend: Backend,
        ui: Optional[UIFeedback] = None,
        context_builder: Optional[ContextBuilder] = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.backend = backend
        self.ui = ui or UIFeedback()
        self.context_builder = context_builder or ContextBuilder()
        self.last_hook_failures: list[HookFailure] = []

    # =========================================================================
    # Public operations
    # =========================================================================

    async def advance(self, action: Optional[str] = None) -> None:
        """
        Run one progression step.

        Raises:
            BackendFailure: If a backend call failed or was aborted; the
                state is unchanged
            PhaseError: If a phase precondition failed; the state is unchanged
        """
        progress = ProgressReporter(self.ui, self.store.get_snapshot().update_interval)
        self.last_hook_failures = []

        async def updater(draft: GameState) -> None:
            await self._advance(draft, action, progress)

        try:
            await self.store.mutate(updater)
        except Exception as e:
            if self.is_abort_error(e):
                logger.info("Step aborted")
            else:
                logger.warning("Step failed: %s", e)
                self.ui.show_error(self._error_title(e), str(e))
            raise

    async def back(self) -> None:
        """Return to the previous setup phase. Welcome and chat stay put."""

        async def updater(draft: GameState) -> None:
            previous = PREVIOUS_VIEW.get(draft.view)
            if previous is not None:
                draft.view = previous

        await self.store.mutate(updater)

    async def reset(self) -> None:
        await self.store.reset()

    def abort(self) -> None:
        """Abort the backend call of the running step, rolling the step back."""
        self.backend.abort()

    def is_abort_error(self, error: BaseException) -> bool:
        return self.backend.is_abort_error(error)

    @staticmethod
    def _error_title(error: Exception) -> str:
        if isinstance(error, BackendFailure):
            return "Backend error"
        if isinstance(error, PhaseError):
            return "Cannot continue"
        return "Error"

    # =========================================================================
    # Phases
    # =========================================================================

    async def _advance(self, draft: GameState, action: Optional[str], progress: ProgressReporter) -> None:
        # Don't spend tokens on a state that could never be committed
        draft.validate_document()

        if draft.view == View.WELCOME:
            draft.view = View.CONNECTION
        elif draft.view == View.CONNECTION:
            progress.step(
                "Checking connection",
                "If this takes longer than a few seconds, there is probably something wrong",
            )
            await self.backend.get_object(CONNECTION_PROBE_PROMPT, ConnectionProbe, progress.on_token)
            draft.view = View.GENRE
        elif draft.view == View.GENRE:
            draft.view = View.CHARACTER
        elif draft.view == View.CHARACTER:
            await self._create_protagonist(draft, progress)
            draft.view = View.SCENARIO
        elif draft.view == View.SCENARIO:
            await self._create_scenario(draft, progress)
            draft.view = View.CHAT
        elif draft.view == View.CHAT:
            await self._play(draft, action, progress)
        else:
            raise PhaseError(f"Invalid view: {draft.view}")

        draft.validate_document()

    async def _create_protagonist(self, draft: GameState, progress: ProgressReporter) -> None:
        rules = self.dispatcher.get_active(draft)
        await self._check_character_choices(draft, rules)

        progress.step("Generating world", "This typically takes between 10 and 30 seconds")
        draft.world = await self.backend.get_object(GENERATE_WORLD_PROMPT, World, progress.on_token)

        progress.step("Generating protagonist", "This typically takes between 10 and 30 seconds")
        guidance = (await rules.get_biography_guidance(draft)).value
        prompt = generate_protagonist_prompt(draft, guidance)
        prompt = (await rules.modify_protagonist_prompt(prompt)).value
        raw = await self.backend.get_object(prompt, RawCharacter, progress.on_token)

        chosen = draft.protagonist
        draft.protagonist = Character(
            name=raw.name,
            gender=chosen.gender,
            race=chosen.race,
            biography=raw.biography,
            location_index=0,
            character_class=chosen.character_class,
            attributes=chosen.attributes,
        )

    async def _check_character_choices(self, draft: GameState, rules: GuardedRuleLogic) -> None:
        races = (await rules.get_available_races()).value
        if races and draft.protagonist.race.lower() not in {race.name.lower() for race in races}:
            raise PhaseError(
                f"Race '{draft.protagonist.race}' is not available; "
                f"choose one of: {', '.join(race.name for race in races)}"
            )

        classes = (await rules.get_available_classes()).value
        chosen_class = draft.protagonist.character_class
        if classes and chosen_class and chosen_class.lower() not in {c.name.lower() for c in classes}:
            raise PhaseError(
                f"Class '{chosen_class}' is not available; "
                f"choose one of: {', '.join(c.name for c in classes)}"
            )

    async def _create_scenario(self, draft: GameState, progress: ProgressReporter) -> None:
        progress.step("Generating starting location", "This typically takes between 10 and 30 seconds")
        location = await self.backend.get_object(
            generate_starting_location_prompt(draft), Location, progress.on_token
        )
        await self._broadcast_location_change(location, draft)

        draft.locations = [location]
        location_index = 0
        draft.protagonist.location_index = location_index

        progress.step("Generating characters", "This typically takes between 30 seconds and 1 minute")
        roster = await self.backend.get_object(
            generate_starting_characters_prompt(draft), CharacterRoster, progress.on_token
        )
        draft.characters = [
            Character(**character.model_dump(), location_index=location_index)
            for character in roster.characters
        ]
        draft.events = [
            LocationChangeEvent(
                location_index=location_index,
                present_character_indices=list(range(len(draft.characters))),
            )
        ]

    async def _play(self, draft: GameState, action: Optional[str], progress: ProgressReporter) -> None:
        draft.actions = []
        if action:
            draft.events.append(ActionEvent(action=action))

        await self._narrate(draft, action, progress)

        progress.step("Checking for location change", "This typically takes a few seconds")
        same = await self.backend.get_object(
            check_if_same_location_prompt(draft, self.context_builder.build(draft)),
            YesNo,
            progress.on_token,
        )
        if same.answer == "no":
            await self._change_location(draft, progress)

        progress.step("Generating actions", "This typically takes a few seconds")
        rule_actions = (await self.dispatcher.get_active(draft).get_actions(draft)).value
        options = await self.backend.get_object(
            generate_actions_prompt(draft, rule_actions, self.context_builder.build(draft)),
            ActionOptions,
            progress.on_token,
        )
        draft.actions = list(options.actions)

    # =========================================================================
    # Narration
    # =========================================================================

    async def _resolve_checks(
        self,
        draft: GameState,
        rules: GuardedRuleLogic,
        action: Optional[str],
    ) -> list[CheckResult]:
        latest_narration = next(
            (event.text for event in reversed(draft.events) if event.type == "narration"),
            "",
        )

        checks = []
        if latest_narration:
            checks.extend((await rules.get_action_checks(latest_narration, draft, "narration")).value)
        if action:
            checks.extend((await rules.get_action_checks(action, draft, "action")).value)

        results: list[CheckResult] = []
        for check in checks:
            result = (await rules.resolve_check(check, draft.protagonist, draft, action)).value
            logger.debug("Check %s (DC %d): %s", check.type, check.difficulty_class, result.statement)
            await rules.handle_consequence(result, draft, action)
            # Record after the consequence, which may extend the statement
            results.append(result)
            draft.events.append(
                CheckEvent(
                    check_type=check.type,
                    difficulty_class=check.difficulty_class,
                    statement=result.statement,
                    success=result.success,
                )
            )

        return results

    async def _narrate(self, draft: GameState, action: Optional[str], progress: ProgressReporter) -> None:
        rules = self.dispatcher.get_active(draft)
        results = await self._resolve_checks(draft, rules, action)
        guidance = (await rules.get_narrative_guidance("general", draft, results, action)).value

        prompt = narrate_prompt(draft, action, guidance, self.context_builder.build(draft))
        progress.step("Narrating")
        text = await self.backend.get_narration(prompt, progress.on_token)

        referenced = find_referenced_characters(text, draft.characters)
        draft.events.append(
            NarrationEvent(
                text=text,
                location_index=draft.protagonist.location_index,
                referenced_character_indices=referenced,
            )
        )

        introduced = {
            event.character_index for event in draft.events
            if event.type == "character_introduction"
        }
        for index in referenced:
            if index not in introduced:
                draft.events.append(CharacterIntroductionEvent(character_index=index))

    # =========================================================================
    # Location changes
    # =========================================================================

    async def _change_location(self, draft: GameState, progress: ProgressReporter) -> None:
        progress.step("Generating location", "This typically takes between 10 and 30 seconds")
        info = await self.backend.get_object(
            generate_new_location_prompt(draft, self.context_builder.build(draft)),
            NewLocationInfo,
            progress.on_token,
        )
        known = {character.name for character in draft.characters}
        accompanying = [name for name in info.accompanying_characters if name in known]

        await self._broadcast_location_change(info.new_location, draft)

        draft.locations.append(info.new_location)
        location_index = len(draft.locations) - 1
        draft.protagonist.location_index = location_index

        present = [i for i, character in enumerate(draft.characters) if character.name in accompanying]
        for index in present:
            draft.characters[index].location_index = location_index

        # Built before the location change event is added
        characters_prompt = generate_new_characters_prompt(
            draft, accompanying, self.context_builder.build(draft)
        )
        event = LocationChangeEvent(location_index=location_index, present_character_indices=present)
        draft.events.append(event)

        progress.step("Generating characters", "This typically takes between 30 seconds and 1 minute")
        roster = await self.backend.get_object(characters_prompt, CharacterRoster, progress.on_token)
        first_new = len(draft.characters)
        draft.characters.extend(
            Character(**character.model_dump(), location_index=location_index)
            for character in roster.characters
        )
        event.present_character_indices.extend(range(first_new, len(draft.characters)))

        await self._narrate(draft, None, progress)

    async def _broadcast_location_change(self, location: Location, draft: GameState) -> list[HookFailure]:
        """
        Call on_location_change on every enabled, functional plugin.

        A plugin that raises is logged and skipped; writes it made to the
        draft before failing are kept. Backend failures still end the step.
        """
        failures: list[HookFailure] = []
        for wrapper in list(draft.plugins):
            if not (wrapper.enabled and wrapper.functional):
                continue
            if not has_hook(wrapper.instance, "on_location_change"):
                continue
            try:
                await call_hook(wrapper.instance, "on_location_change", location, draft)
            except BackendFailure:
                raise
            except Exception as e:
                failure = HookFailure(wrapper.name, "on_location_change", e)
                logger.warning("%s", failure, exc_info=True)
                failures.append(failure)

        if failures:
            self.ui.log(f"{len(failures)} plugin(s) failed while changing location; see log for details")
        self.last_hook_failures.extend(failures)
        return failures
