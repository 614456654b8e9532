"""
Prompt builders for Taleweaver.

Every backend request is a Prompt (system + user message). Builders read
the current state (or draft) and never modify it. Structured requests
pair a prompt with one of the response models at the bottom of this module.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Literal, Optional, Sequence

from pydantic import BaseModel, Field

from taleweaver.core.state import Action, Location, LocationType, RawCharacter

if TYPE_CHECKING:
    from taleweaver.core.state import GameState

SYSTEM_PROMPT = "You are the game master of a text-based fantasy role-playing game."

_SINGLE_NEWLINE = re.compile(r"(?<!\n)\n(?!\n)")


class Prompt(BaseModel):
    """A system/user message pair for the backend."""

    system: str
    user: str

    def to_messages(self) -> list[dict[str, str]]:
        """Format as chat messages for an OpenAI-compatible API."""
        return [
            {"role": "system", "content": self.system},
            {"role": "user", "content": self.user},
        ]


def normalize(text: str) -> str:
    """Collapse single newlines into spaces so prompts can be written as blocks."""
    return _SINGLE_NEWLINE.sub(" ", text).strip()


def make_prompt(user_prompt: str) -> Prompt:
    return Prompt(system=SYSTEM_PROMPT, user=normalize(user_prompt))


# =============================================================================
# Setup phase prompts
# =============================================================================

GENERATE_WORLD_PROMPT = make_prompt("""
Create a fictional world for a fantasy adventure RPG and return its name
and a short description (100 words maximum) as a JSON object.
Do not use a cliched name like 'Eldoria'.
The world is populated by humans, elves, and dwarves.
""")

CONNECTION_PROBE_PROMPT = Prompt(
    system="You are a connectivity test.",
    user='Return the JSON object {"reply": "taleweaver"}.',
)


def generate_protagonist_prompt(state: GameState, guidance: str = "") -> Prompt:
    """Prompt for the protagonist, with rule-provided biography guidance."""
    protagonist = state.protagonist
    class_text = f" {protagonist.character_class}" if protagonist.character_class else ""
    return make_prompt(f"""
Create a {protagonist.gender.value} {protagonist.race}{class_text} protagonist
for a fantasy adventure set in the world of {state.world.name}.

{state.world.description}

{guidance}

Return the character description as a JSON object. Include a short biography (250 words maximum).
""")


def generate_starting_location_prompt(state: GameState) -> Prompt:
    types = ", ".join(t.value for t in LocationType)
    return make_prompt(f"""
Create a starting location for a fantasy adventure set in the world of {state.world.name}.

{state.world.description}

Return the name and type of the location, and a short description (100 words maximum), as a JSON object.
Choose from the following location types: {types}
""")


def generate_starting_characters_prompt(state: GameState) -> Prompt:
    location = state.current_location
    location_name = location.name if location else "the starting location"
    location_description = location.description if location else ""
    protagonist = state.protagonist

    return make_prompt(f"""
This is the start of a fantasy adventure set in the world of {state.world.name}. {state.world.description}

The protagonist is {protagonist.name}. {protagonist.biography}

{protagonist.name} is about to enter {location_name}. {location_description}

Create 5 characters that {protagonist.name} might encounter at {location_name}.
Return the character descriptions as an array of JSON objects.
Include a short biography (100 words maximum) for each character.
""")


# =============================================================================
# Main loop prompts
# =============================================================================

def location_change_text(state: GameState, location_index: int, present: Sequence[int]) -> str:
    """Describe entering a location and who is there."""
    location = state.locations[location_index]
    characters = "\n\n".join(
        state.characters[index].to_context_string()
        for index in present
        if 0 <= index < len(state.characters)
    )
    return (
        "-----\n\n"
        "LOCATION CHANGE\n\n"
        f"{state.protagonist.name} is entering {location.name}. {location.description}\n\n"
        f"The following characters are present at {location.name}:\n\n"
        f"{characters}\n\n"
        "-----"
    )


def make_main_prompt(prompt: str, state: GameState, history: Optional[str] = None) -> Prompt:
    """
    Wrap a request in the world, protagonist and story-so-far context.

    Args:
        prompt: The specific request
        state: The current state or draft
        history: Pre-built story context; built from all events when omitted
    """
    if history is None:
        parts: list[str] = []
        for event in state.events:
            if event.type == "narration" and event.text:
                parts.append(event.text)
            elif event.type == "location_change":
                parts.append(location_change_text(state, event.location_index, event.present_character_indices))
        history = "\n\n".join(parts)

    protagonist = state.protagonist
    return Prompt(
        system=SYSTEM_PROMPT,
        user=normalize(f"""
This is a fantasy adventure RPG set in the world of {state.world.name}. {state.world.description}

The protagonist (who you should refer to as "you" in your narration, as the adventure happens from their perspective)
is {protagonist.name}. {protagonist.biography}

Here is what has happened so far:

""") + "\n\n" + history + "\n\n\n\n" + normalize(prompt),
    )


def narrate_prompt(
    state: GameState,
    action: Optional[str] = None,
    guidance: Optional[Sequence[str]] = None,
    history: Optional[str] = None,
) -> Prompt:
    """
    Prompt for the next stretch of narration.

    `guidance` holds rule-provider statements (check outcomes, tone notes);
    they are appended after the action so the narration reflects them.
    """
    name = state.protagonist.name
    action_text = f"The protagonist ({name}) has chosen to do the following: {action.rstrip('.')}." if action else ""
    guidance_text = ""
    if guidance:
        statements = [line for line in guidance if line]
        if statements:
            guidance_text = "\n\nCheck Results:\n" + "\n".join(statements)

    return make_main_prompt(
        f"""{action_text}{guidance_text}

Narrate what happens next, using novel-style prose, in the present tense.
Prioritize dialogue over descriptions.
Do not mention more than 2 different characters in your narration.
Refer to characters using their first names.
Make all character names bold by surrounding them with double asterisks (**Name**).
Write 2-3 paragraphs (no more than 200 words in total).
Stop when it is the protagonist's turn to speak or act.
Remember to refer to the protagonist ({name}) as "you" in your narration.
Do not explicitly ask the protagonist for a response at the end; they already know what is expected of them.
""",
        state,
        history,
    )


def generate_actions_prompt(
    state: GameState,
    rule_actions: Sequence[str] = (),
    history: Optional[str] = None,
) -> Prompt:
    rule_text = ""
    if rule_actions:
        listed = "\n".join(f"- {action}" for action in rule_actions)
        rule_text = f"Here are the available actions from the game rules:\n{listed}\n\n"

    return make_main_prompt(
        f"""{rule_text}Suggest 3 options for what the protagonist ({state.protagonist.name}) could do or say next.
Each option should be a single, short sentence that starts with a verb.
Return the options as a JSON object with an "actions" array of strings.
""",
        state,
        history,
    )


def check_if_same_location_prompt(state: GameState, history: Optional[str] = None) -> Prompt:
    location = state.current_location
    location_name = location.name if location else "the current location"
    return make_main_prompt(
        f"""
Is the protagonist ({state.protagonist.name}) still at {location_name}?
Answer with "yes" or "no".
""",
        state,
        history,
    )


def generate_new_location_prompt(state: GameState, history: Optional[str] = None) -> Prompt:
    location = state.current_location
    location_name = location.name if location else "their location"
    name = state.protagonist.name
    return make_main_prompt(
        f"""
The protagonist ({name}) has left {location_name}.
Return the name and type of their new location, and a short description (100 words maximum), as a JSON object.
Also include the names of the characters that are going to accompany {name} there, if any.
""",
        state,
        history,
    )


def generate_new_characters_prompt(
    state: GameState,
    accompanying: Sequence[str],
    history: Optional[str] = None,
) -> Prompt:
    """Must be built before the location change event is appended."""
    location = state.current_location
    location_name = location.name if location else "the new location"
    location_description = location.description if location else ""
    name = state.protagonist.name
    company = (
        f"{name} is accompanied by the following characters: {', '.join(accompanying)}."
        if accompanying else ""
    )
    return make_main_prompt(
        f"""
The protagonist ({name}) is about to enter {location_name}. {location_description}

{company}

Create 5 additional, new characters that {name} might encounter at {location_name}.
Do not reuse characters that have already appeared in the story.
Return the character descriptions as an array of JSON objects.
Include a short biography (100 words maximum) for each character.
""",
        state,
        history,
    )


# =============================================================================
# Response models for structured generation
# =============================================================================

class ConnectionProbe(BaseModel):
    reply: Literal["taleweaver"]


class YesNo(BaseModel):
    answer: Literal["yes", "no"]


class CharacterRoster(BaseModel):
    characters: list[RawCharacter] = Field(min_length=5, max_length=5)


class ActionOptions(BaseModel):
    actions: list[Action] = Field(min_length=3, max_length=3)


class NewLocationInfo(BaseModel):
    new_location: Location
    accompanying_characters: list[str] = Field(default_factory=list)
