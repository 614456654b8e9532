"""
Story Context Service for Taleweaver.

Builds the "what has happened so far" section of the main prompt within
a token budget typical of local LLMs.

The Algorithm:
1. Use the full text of every narration and location change
2. If over budget, replace the oldest narrations with their summaries
3. If still over, replace whole scenes with their scene summaries
   (a scene runs from one location change to the next; the latest
   scene is never replaced)
4. If still over, drop the oldest units until the rest fits
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Union

from taleweaver.core.prompts import location_change_text

if TYPE_CHECKING:
    from taleweaver.core.state import GameState, LocationChangeEvent, NarrationEvent

    StoryEvent = Union[NarrationEvent, LocationChangeEvent]


@dataclass(frozen=True)
class ContextUnit:
    """A piece of story context covering events[start:end + 1]."""

    kind: str
    text: str
    tokens: int
    start: int
    end: int


class ContextBuilder:
    """
    Compresses the event history into a budgeted context string.

    Summaries are read from the events; this service never generates them.
    """

    # Token budget configuration
    DEFAULT_BUDGET = 4000

    # Simple estimation: ~3 chars per token, rounded up
    CHARS_PER_TOKEN = 3

    def __init__(self, token_budget: int = DEFAULT_BUDGET) -> None:
        self.token_budget = token_budget

    def estimate_tokens(self, text: str) -> int:
        return -(-len(text) // self.CHARS_PER_TOKEN)

    def build(self, state: GameState) -> str:
        """
        Build the story context for `state`.

        Character introductions, actions and checks are left out; the
        narration already reflects them.
        """
        events: list[StoryEvent] = [
            event for event in state.events
            if event.type in ("narration", "location_change")
        ]
        if not events:
            return ""

        units = self._initial_units(events, state)
        for step in (self._summarize_narrations, self._summarize_scenes, self._drop_oldest):
            if self._within_budget(units):
                break
            units = step(units, events)

        return "\n\n".join(unit.text for unit in units)

    def _within_budget(self, units: list[ContextUnit]) -> bool:
        return sum(unit.tokens for unit in units) <= self.token_budget

    def _unit(self, kind: str, text: str, start: int, end: int) -> ContextUnit:
        return ContextUnit(kind=kind, text=text, tokens=self.estimate_tokens(text), start=start, end=end)

    def _initial_units(self, events: list[StoryEvent], state: GameState) -> list[ContextUnit]:
        units: list[ContextUnit] = []
        for index, event in enumerate(events):
            if event.type == "narration":
                text = event.text
            else:
                text = location_change_text(state, event.location_index, event.present_character_indices)
            units.append(self._unit(event.type, text, index, index))
        return units

    def _summarize_narrations(self, units: list[ContextUnit], events: list[StoryEvent]) -> list[ContextUnit]:
        """Swap narrations for their summaries, oldest first, until within budget."""
        units = list(units)
        for i, unit in enumerate(units):
            if self._within_budget(units):
                break
            if unit.kind != "narration":
                continue
            summary = events[unit.start].summary
            if summary:
                units[i] = replace(unit, text=summary, tokens=self.estimate_tokens(summary))
        return units

    def _summarize_scenes(self, units: list[ContextUnit], events: list[StoryEvent]) -> list[ContextUnit]:
        """
        Swap whole scenes for the summary stored on the location change
        that ended them, oldest first.
        """
        units = list(units)
        scene = 0
        while scene < len(units) and not self._within_budget(units):
            if units[scene].kind != "location_change":
                scene += 1
                continue

            end = next(
                (i for i in range(scene + 1, len(units)) if units[i].kind == "location_change"),
                None,
            )
            if end is None:
                # Latest scene
                break

            summary = events[units[end].start].summary
            if summary:
                merged = self._unit("location_change", summary, units[scene].start, units[end - 1].end)
                units = units[:scene] + [merged] + units[end:]
            scene += 1

        return units

    def _drop_oldest(self, units: list[ContextUnit], events: list[StoryEvent]) -> list[ContextUnit]:
        units = list(units)
        while units and not self._within_budget(units):
            units.pop(0)
        return units
