"""
Unit tests for the game progression engine.

Runs the engine against a scripted backend through the setup phases
and the chat loop: checks, narration, location changes, rollback on
backend failure and abort.
"""

import asyncio

import pytest
from conftest import (
    FakeBackend,
    make_location,
    script_move,
    script_setup,
    script_turn,
)
from pydantic import ValidationError

from taleweaver.core.errors import BackendAborted, BackendFailure, PhaseError
from taleweaver.core.prompts import ActionOptions
from taleweaver.core.rules import RuleLogic, RuleLogicDispatcher
from taleweaver.core.state import Character, GameState, Gender, PluginWrapper, RawCharacter, View
from taleweaver.core.store import GameStateStore
from taleweaver.services.engine import GameEngine, ProgressReporter, find_referenced_characters


class RulesPlugin:
    def __init__(self, provider):
        self.provider = provider

    def init(self, settings, context, capabilities):
        pass

    def get_rule_logic_provider(self):
        return self.provider


class LocationWatcher:
    """Records each location it is told about into its own settings."""

    def __init__(self, name, fail=False):
        self.name = name
        self.fail = fail

    def init(self, settings, context, capabilities):
        pass

    def on_location_change(self, location, draft):
        if self.fail:
            raise RuntimeError("watcher crashed")
        draft.find_plugin(self.name).settings.setdefault("seen", []).append(location.name)


def make_engine(state=None, ui=None):
    store = GameStateStore(state or GameState())
    backend = FakeBackend()
    engine = GameEngine(store, RuleLogicDispatcher(store), backend, ui)
    return store, backend, engine


async def run_setup(engine):
    """Advance from welcome to chat."""
    for _ in range(5):
        await engine.advance()


class TestSetupPhases:
    """Tests for welcome through scenario."""

    def test_full_setup(self):
        store, backend, engine = make_engine()
        script_setup(backend)

        asyncio.run(run_setup(engine))

        state = store.get_snapshot()
        assert state.view == View.CHAT
        assert state.world.name == "Varnhal"
        assert state.protagonist.name == "Rowan"
        assert state.locations[0].name == "The Gilded Goose"
        assert len(state.characters) == 5
        assert all(c.location_index == 0 for c in state.characters)
        assert len(state.events) == 1
        assert state.events[0].type == "location_change"
        assert state.events[0].present_character_indices == [0, 1, 2, 3, 4]

    def test_failed_connection_keeps_phase(self, ui):
        """A backend failure rolls the step back and is shown to the user."""
        store, backend, engine = make_engine(ui=ui)

        async def scenario():
            await engine.advance()
            with pytest.raises(BackendFailure):
                await engine.advance()

        asyncio.run(scenario())

        assert store.get_snapshot().view == View.CONNECTION
        assert ui.errors[0][0] == "Backend error"

    def test_protagonist_keeps_player_choices(self):
        """Gender, race and class come from the player, name and biography from the backend."""
        state = GameState(view=View.CHARACTER)
        state.protagonist.gender = Gender.FEMALE
        state.protagonist.race = "elf"
        state.protagonist.character_class = "Ranger"
        state.protagonist.attributes = {"dexterity": 16}
        store, backend, engine = make_engine(state)
        script_setup(backend)

        asyncio.run(engine.advance())

        protagonist = store.get_snapshot().protagonist
        assert protagonist.name == "Rowan"
        assert protagonist.gender == Gender.FEMALE
        assert protagonist.race == "elf"
        assert protagonist.character_class == "Ranger"
        assert protagonist.attributes == {"dexterity": 16}
        assert store.get_snapshot().view == View.SCENARIO

    def test_biography_guidance_in_protagonist_prompt(self):
        class Guide(RuleLogic):
            def get_biography_guidance(self, state):
                return "The hero is unusually strong."

        state = GameState(
            view=View.CHARACTER,
            plugins=[PluginWrapper(name="guide", selected_plugin=True, instance=RulesPlugin(Guide()))],
        )
        store, backend, engine = make_engine(state)
        script_setup(backend)

        asyncio.run(engine.advance())

        assert "unusually strong" in backend.prompts_for(RawCharacter)[0].user

    def test_unavailable_race_rejected(self):
        """The phase does not advance when the chosen race is not offered."""
        class Elves(RuleLogic):
            def get_available_races(self):
                return ["Elf", "Half-Elf"]

        state = GameState(
            view=View.CHARACTER,
            plugins=[PluginWrapper(name="elves", selected_plugin=True, instance=RulesPlugin(Elves()))],
        )
        store, backend, engine = make_engine(state)
        script_setup(backend)

        with pytest.raises(PhaseError):
            asyncio.run(engine.advance())

        assert store.get_snapshot().view == View.CHARACTER
        assert backend.requests == []

    def test_back(self):
        store, backend, engine = make_engine(GameState(view=View.GENRE))

        async def scenario():
            await engine.back()
            await engine.back()
            await engine.back()

        asyncio.run(scenario())

        assert store.get_snapshot().view == View.WELCOME

    def test_back_from_chat_stays(self):
        store, backend, engine = make_engine(GameState(view=View.CHAT))
        asyncio.run(engine.back())
        assert store.get_snapshot().view == View.CHAT


class TestChat:
    """Tests for chat-phase steps."""

    def test_turn_records_events_and_actions(self):
        store, backend, engine = make_engine()
        script_setup(backend)
        script_turn(backend, "**Ada** raises her mug. **Bram's** dog barks.")

        async def scenario():
            await run_setup(engine)
            await engine.advance("Order a drink")

        asyncio.run(scenario())

        state = store.get_snapshot()
        types = [event.type for event in state.events]
        assert types == [
            "location_change", "action", "narration",
            "character_introduction", "character_introduction",
        ]
        assert state.events[2].referenced_character_indices == [0, 1]
        assert state.actions == ["Order a drink", "Talk to Ada", "Leave the tavern"]

    def test_characters_introduced_once(self):
        store, backend, engine = make_engine()
        script_setup(backend)
        script_turn(backend, "**Ada** nods.")
        script_turn(backend, "**Ada** smiles at you.")

        async def scenario():
            await run_setup(engine)
            await engine.advance("Wave")
            await engine.advance("Wave again")

        asyncio.run(scenario())

        intros = [e for e in store.get_snapshot().events if e.type == "character_introduction"]
        assert len(intros) == 1

    def test_check_result_in_narration_prompt(self):
        """
        A lock-picking action triggers a dexterity check whose statement
        reaches the narration prompt.
        """
        store, backend, engine = make_engine()
        script_setup(backend)
        script_turn(backend, "The lock clicks.")

        async def scenario():
            await run_setup(engine)
            await engine.advance("pick the lock")

        asyncio.run(scenario())

        state = store.get_snapshot()
        checks = [e for e in state.events if e.type == "check"]
        assert len(checks) == 1
        assert checks[0].check_type == "dexterity"
        assert checks[0].difficulty_class == 15

        prompt = backend.prompts_for("narration")[0].user
        assert "Check Results:" in prompt
        assert checks[0].statement in prompt

    def test_consequences_and_rule_actions(self):
        """Consequence hooks may change the draft; rule actions reach the action prompt."""
        class Combat(RuleLogic):
            async def handle_consequence(self, result, state, action=None):
                state.is_combat = True
                result.statement += " The bandit counterattacks."

            async def get_actions(self, state):
                return ["Parry"] if state.is_combat else []

        state = GameState(plugins=[
            PluginWrapper(name="combat", selected_plugin=True, instance=RulesPlugin(Combat())),
        ])
        store, backend, engine = make_engine(state)
        script_setup(backend)
        script_turn(backend, "Steel rings.")

        async def scenario():
            await run_setup(engine)
            await engine.advance("Attack the bandit")

        asyncio.run(scenario())

        state = store.get_snapshot()
        check = next(e for e in state.events if e.type == "check")
        assert state.is_combat
        assert check.statement.endswith(" The bandit counterattacks.")
        assert check.statement in backend.prompts_for("narration")[0].user
        assert "- Parry" in backend.prompts_for(ActionOptions)[0].user

    def test_overlong_narration_rolls_back(self, ui):
        store, backend, engine = make_engine(ui=ui)
        script_setup(backend)
        script_turn(backend, "x" * 6000)

        async def scenario():
            await run_setup(engine)
            before = store.get_snapshot()
            with pytest.raises(ValidationError):
                await engine.advance("Talk")
            return before

        before = asyncio.run(scenario())

        assert store.get_snapshot() is before
        assert ui.errors

    def test_abort_restores_snapshot(self, ui):
        """Aborting mid-narration leaves exactly the pre-step state."""
        store, backend, engine = make_engine(ui=ui)
        script_setup(backend)
        script_turn(backend, "Never seen.")

        async def scenario():
            await run_setup(engine)
            before = store.get_snapshot()
            dump = before.model_dump()
            backend.block = True
            task = asyncio.create_task(engine.advance("Order a drink"))
            await backend.started.wait()
            engine.abort()
            with pytest.raises(BackendAborted):
                await task
            return before, dump

        before, dump = asyncio.run(scenario())

        assert store.get_snapshot() is before
        assert store.get_snapshot().model_dump() == dump
        assert backend.aborted == 1
        assert ui.errors == []
        assert not store.busy


class TestLocationChange:
    """Tests for moving to a new location."""

    def test_move_creates_location_and_characters(self):
        store, backend, engine = make_engine()
        script_setup(backend)
        script_move(
            backend,
            "You leave with **Ada**.",
            "The docks smell of tar. **Fenn** waves.",
            make_location("Saltmarsh Docks", "market"),
            accompanying=["Ada Brook", "Nobody Known"],
        )

        async def scenario():
            await run_setup(engine)
            await engine.advance("Leave the tavern")

        asyncio.run(scenario())

        state = store.get_snapshot()
        assert [l.name for l in state.locations] == ["The Gilded Goose", "Saltmarsh Docks"]
        assert state.protagonist.location_index == 1
        assert state.characters[0].location_index == 1
        assert state.characters[1].location_index == 0
        assert len(state.characters) == 10
        assert [e.type for e in state.events] == [
            "location_change", "action", "narration", "character_introduction",
            "location_change", "narration", "character_introduction",
        ]
        move = state.events[4]
        assert move.location_index == 1
        assert move.present_character_indices == [0, 5, 6, 7, 8, 9]
        assert state.events[5].location_index == 1

    def test_broadcast_survives_failing_plugin(self):
        """
        Three plugins hear about the move; the second one raises. The
        other two keep their draft changes and the step completes.
        """
        state = GameState(plugins=[
            PluginWrapper(name="first", instance=LocationWatcher("first")),
            PluginWrapper(name="second", instance=LocationWatcher("second", fail=True)),
            PluginWrapper(name="third", instance=LocationWatcher("third")),
        ])
        store, backend, engine = make_engine(state)
        script_setup(backend)
        script_move(backend, "You walk out.", "Gulls cry.", make_location("Saltmarsh Docks", "market"))

        async def scenario():
            await run_setup(engine)
            await engine.advance("Leave")

        asyncio.run(scenario())

        state = store.get_snapshot()
        assert state.find_plugin("first").settings["seen"] == ["The Gilded Goose", "Saltmarsh Docks"]
        assert state.find_plugin("third").settings["seen"] == ["The Gilded Goose", "Saltmarsh Docks"]
        assert "seen" not in state.find_plugin("second").settings
        assert state.locations[-1].name == "Saltmarsh Docks"
        assert [f.plugin_name for f in engine.last_hook_failures] == ["second"]

    def test_broadcast_skips_disabled_plugins(self):
        state = GameState(view=View.SCENARIO, plugins=[
            PluginWrapper(name="off", enabled=False, instance=LocationWatcher("off")),
        ])
        store, backend, engine = make_engine(state)
        script_setup(backend)

        asyncio.run(engine.advance())

        assert store.get_snapshot().find_plugin("off").settings == {}


class TestHelpers:
    """Tests for engine helpers."""

    def test_find_referenced_characters(self):

        characters = [
            Character(name="Ada Brook", gender="female", race="human", biography="b"),
            Character(name="Bram", gender="male", race="dwarf", biography="b"),
        ]

        assert find_referenced_characters("**Bram** and **Ada**", characters) == [1, 0]
        assert find_referenced_characters("**Ada's** hat, **Ada Brook**", characters) == [0]
        assert find_referenced_characters("**Stranger**", characters) == []

    def test_progress_reporter_throttles(self, ui):
        reporter = ProgressReporter(ui, interval_ms=60_000)

        reporter.step("Narrating")
        reporter.on_token("a", 1)
        reporter.on_token("b", 2)

        assert ui.progress == [("Narrating", "", 0)]

    def test_progress_reporter_without_throttle(self, ui):
        reporter = ProgressReporter(ui, interval_ms=0)

        reporter.step("Narrating")
        reporter.on_token("a", 1)

        assert ui.progress[-1] == ("Narrating", "", 1)
