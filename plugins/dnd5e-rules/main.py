"""
D&D 5th Edition rules for Taleweaver.

Rolls ability scores (4d6, drop the lowest) on first load, offers the
5e races and classes, maps skills to abilities for checks, and tracks
hit points through failed attacks.
"""

from __future__ import annotations

import re
from typing import Any, Optional, Sequence

from rich.table import Table

from taleweaver.core.rules import (
    ATTRIBUTES,
    CheckDefinition,
    CheckResult,
    ClassDefinition,
    RaceDefinition,
    RuleLogic,
    ability_modifier,
)
from taleweaver.core.state import Character, GameState
from taleweaver.plugins.base import Plugin

PLUGIN_NAME = "dnd5e-rules"

SKILLS: dict[str, str] = {
    "athletics": "strength",
    "acrobatics": "dexterity",
    "sleight of hand": "dexterity",
    "stealth": "dexterity",
    "arcana": "intelligence",
    "history": "intelligence",
    "investigation": "intelligence",
    "nature": "intelligence",
    "religion": "intelligence",
    "animal handling": "wisdom",
    "insight": "wisdom",
    "medicine": "wisdom",
    "perception": "wisdom",
    "survival": "wisdom",
    "deception": "charisma",
    "intimidation": "charisma",
    "performance": "charisma",
    "persuasion": "charisma",
    "to-hit": "strength",
    "initiative": "dexterity",
}

# (pattern, check type, DC); the first match wins
ACTION_SKILLS: tuple[tuple[str, str, int], ...] = (
    (r"\b(attack|strike|stab|slash|shoot|punch|swing)\b", "to-hit", 12),
    (r"\b(pick|lock|pickpocket|steal|palm)\b", "sleight of hand", 15),
    (r"\b(sneak|hide|creep|tiptoe)\b", "stealth", 13),
    (r"\b(climb|jump|swim|lift|push|shove|grapple)\b", "athletics", 12),
    (r"\b(tumble|balance|flip|dodge)\b", "acrobatics", 12),
    (r"\b(persuade|convince|plead|bargain|haggle)\b", "persuasion", 13),
    (r"\b(lie|bluff|deceive|trick)\b", "deception", 14),
    (r"\b(threaten|intimidate|scare)\b", "intimidation", 13),
    (r"\b(search|investigate|examine|inspect)\b", "investigation", 12),
    (r"\b(listen|spot|watch|look around)\b", "perception", 12),
    (r"\b(read|sense motive|study (?:his|her|their) face)\b", "insight", 12),
    (r"\b(heal|bandage|treat)\b", "medicine", 12),
    (r"\b(track|forage|navigate)\b", "survival", 12),
    (r"\b(recall|remember|lore)\b", "history", 12),
)

AMBUSH = re.compile(r"\b(ambush|ambushes|attacks you|lunges at you|draws? (?:a|his|her|their) (?:sword|blade|dagger|weapon))\b")

RACES: tuple[RaceDefinition, ...] = (
    RaceDefinition(name="Human", description="Versatile and ambitious", attribute_bonuses={a: 1 for a in ATTRIBUTES}),
    RaceDefinition(name="Elf", description="Graceful and long-lived", attribute_bonuses={"dexterity": 2}),
    RaceDefinition(name="Dwarf", description="Stout and resilient", attribute_bonuses={"constitution": 2}),
    RaceDefinition(name="Halfling", description="Small and lucky", attribute_bonuses={"dexterity": 2}),
    RaceDefinition(name="Gnome", description="Curious tinkerers", attribute_bonuses={"intelligence": 2}),
    RaceDefinition(name="Half-Orc", description="Fierce and enduring", attribute_bonuses={"strength": 2, "constitution": 1}),
    RaceDefinition(name="Tiefling", description="Touched by infernal blood", attribute_bonuses={"charisma": 2, "intelligence": 1}),
    RaceDefinition(name="Dragonborn", description="Proud draconic heritage", attribute_bonuses={"strength": 2, "charisma": 1}),
)

CLASSES: tuple[ClassDefinition, ...] = (
    ClassDefinition(name="Barbarian", hit_die=12, subclasses=["Path of the Berserker", "Path of the Totem Warrior"]),
    ClassDefinition(name="Bard", hit_die=8, subclasses=["College of Lore", "College of Valor"]),
    ClassDefinition(name="Cleric", hit_die=8, subclasses=["Life Domain", "Light Domain", "Trickery Domain"]),
    ClassDefinition(name="Druid", hit_die=8, subclasses=["Circle of the Land", "Circle of the Moon"]),
    ClassDefinition(name="Fighter", hit_die=10, subclasses=["Champion", "Battle Master", "Eldritch Knight"]),
    ClassDefinition(name="Monk", hit_die=8, subclasses=["Way of the Open Hand", "Way of Shadow"]),
    ClassDefinition(name="Paladin", hit_die=10, subclasses=["Oath of Devotion", "Oath of Vengeance"]),
    ClassDefinition(name="Ranger", hit_die=10, subclasses=["Hunter", "Beast Master"]),
    ClassDefinition(name="Rogue", hit_die=8, subclasses=["Thief", "Assassin", "Arcane Trickster"]),
    ClassDefinition(name="Sorcerer", hit_die=6, subclasses=["Draconic Bloodline", "Wild Magic"]),
    ClassDefinition(name="Warlock", hit_die=8, subclasses=["The Fiend", "The Great Old One"]),
    ClassDefinition(name="Wizard", hit_die=6, subclasses=["School of Evocation", "School of Divination"]),
)

# Descriptive bands for biography guidance, indexed by modifier
DESCRIPTORS: dict[str, dict[int, str]] = {
    "strength": {-4: "morbidly weak", -3: "feeble", -2: "weak", -1: "below average in strength", 0: "of average strength", 1: "fairly strong", 2: "strong", 3: "very strong", 4: "near peak human strength"},
    "dexterity": {-4: "barely mobile", -3: "clumsy", -2: "awkward", -1: "a bit ungainly", 0: "of average agility", 1: "nimble", 2: "adept", 3: "graceful", 4: "lithe as an acrobat"},
    "constitution": {-4: "frail", -3: "delicate", -2: "unhealthy", -1: "fragile", 0: "of average health", 1: "sturdy", 2: "hardy", 3: "tough", 4: "tireless"},
    "intelligence": {-4: "barely able to reason", -3: "dim-witted", -2: "slow-witted", -1: "forgetful", 0: "of average intellect", 1: "bright", 2: "intelligent", 3: "very intelligent", 4: "a genius"},
    "wisdom": {-4: "oblivious", -3: "unobservant", -2: "foolish", -1: "inattentive", 0: "sensible", 1: "perceptive", 2: "insightful", 3: "keen-witted", 4: "profoundly wise"},
    "charisma": {-4: "repellent", -3: "off-putting", -2: "awkward in company", -1: "unremarkable", 0: "reasonably likeable", 1: "charming", 2: "persuasive", 3: "magnetic", 4: "captivating"},
}


def describe(ability: str, score: int) -> str:
    modifier = max(-4, min(4, ability_modifier(score)))
    return DESCRIPTORS[ability][modifier]


def max_hit_points(class_name: Optional[str], constitution: int) -> int:
    """First-level hit points: the class hit die (d8 if unknown) plus the constitution modifier."""
    class_def = next((c for c in CLASSES if c.name.lower() == (class_name or "").lower()), None)
    hit_die = class_def.hit_die if class_def else 8
    return max(1, hit_die + ability_modifier(constitution))


class DndRuleLogic(RuleLogic):
    """5e rules; reads ability scores and hit points from the plugin settings in the state."""

    def __init__(self, plugin: DndPlugin) -> None:
        super().__init__(plugin.dice)
        self.plugin = plugin

    def get_biography_guidance(self, state: GameState) -> str:
        # The character step passes its draft; sheet writes commit with it
        self.plugin.apply_character(state)
        settings = self.plugin.settings_in(state)
        traits = [
            f"{ability} {settings[ability]} ({describe(ability, settings[ability])})"
            for ability in ATTRIBUTES
            if ability in settings
        ]
        lines = ["The protagonist's abilities are: " + "; ".join(traits) + "."]
        if settings.get("class"):
            subclass = f" ({settings['subclass']})" if settings.get("subclass") else ""
            lines.append(f"They are a {settings['class']}{subclass}.")
        lines.append("Reflect these abilities in the biography without quoting the numbers.")
        return " ".join(lines)

    def get_available_races(self) -> list[RaceDefinition]:
        return list(RACES)

    def get_available_classes(self) -> list[ClassDefinition]:
        return list(CLASSES)

    async def get_action_checks(
        self,
        text: str,
        state: GameState,
        source: str = "action",
    ) -> list[CheckDefinition]:
        lowered = text.lower()
        if source == "narration":
            if not state.is_combat and AMBUSH.search(lowered):
                return [CheckDefinition(type="initiative", difficulty_class=10)]
            return []

        for pattern, skill, difficulty in ACTION_SKILLS:
            if re.search(pattern, lowered):
                return [CheckDefinition(type=skill, difficulty_class=difficulty)]
        return []

    def score(self, state: GameState, ability: str) -> int:
        settings = self.plugin.settings_in(state)
        base = int(settings.get(ability, self.DEFAULT_SCORE))
        race = next((r for r in RACES if r.name.lower() == state.protagonist.race.lower()), None)
        return base + (race.attribute_bonuses.get(ability, 0) if race else 0)

    async def resolve_check(
        self,
        check: CheckDefinition,
        character: Character,
        state: GameState,
        action: Optional[str] = None,
    ) -> CheckResult:
        check_type = check.type.lower()
        ability = check_type if check_type in ATTRIBUTES else SKILLS.get(check_type)
        if ability is None and check.modifiers:
            candidate = check.modifiers[0].lower()
            ability = candidate if candidate in ATTRIBUTES else None
        if ability is None:
            return CheckResult(
                statement=f"Check for {check.type} could not be resolved: No relevant ability score found.",
                check=check,
            )

        roll = self.dice.total("1d20")
        total = roll + ability_modifier(self.score(state, ability))
        success = total >= check.difficulty_class
        verb = "successfully passed" if success else "failed"
        return CheckResult(
            statement=(
                f"{character.name} {verb} the {check.type} check (DC {check.difficulty_class}) "
                f"with a roll of {roll} and a total of {total}."
            ),
            success=success,
            roll=roll,
            total=total,
            check=check,
        )

    async def handle_consequence(
        self,
        result: CheckResult,
        state: GameState,
        action: Optional[str] = None,
    ) -> None:
        if result.check is None:
            return
        check_type = result.check.type.lower()
        if check_type == "initiative":
            state.is_combat = True
        elif check_type == "to-hit":
            state.is_combat = True
            if result.success is False:
                settings = self.plugin.settings_in(state)
                damage = self.dice.total("1d6")
                settings["hit_points"] = max(0, int(settings.get("hit_points") or 0) - damage)
                result.statement += f" The counterattack deals {damage} damage."

    async def get_actions(self, state: GameState) -> list[str]:
        if state.is_combat:
            return ["Attack", "Dodge", "Disengage"]
        return []

    async def get_narrative_guidance(
        self,
        event_type: str,
        state: GameState,
        results: Sequence[CheckResult] = (),
        action: Optional[str] = None,
    ) -> list[str]:
        guidance = [result.statement for result in results if result.statement]
        if state.is_combat:
            settings = self.plugin.settings_in(state)
            hit_points = settings.get("hit_points")
            guidance.append(
                f"{state.protagonist.name} is in combat "
                f"({hit_points}/{settings.get('max_hit_points')} hit points)."
            )
            if hit_points == 0:
                guidance.append(f"{state.protagonist.name} falls unconscious.")
        return guidance


class DndPlugin(Plugin):
    name = PLUGIN_NAME

    def __init__(self) -> None:
        super().__init__()
        self.dice = None
        self.rules: Optional[DndRuleLogic] = None

    async def init(self, settings: dict[str, Any], context: Any, capabilities: Any) -> None:
        await super().init(settings, context, capabilities)
        self.dice = capabilities.library.dice

        # `settings` is the record being registered, so these writes persist
        for ability in ATTRIBUTES:
            if not settings.get(ability):
                settings[ability] = self.dice.total("4d6dl1")
        if settings.get("max_hit_points") is None:
            settings["max_hit_points"] = max_hit_points(settings.get("class"), settings["constitution"])
        if settings.get("hit_points") is None:
            settings["hit_points"] = settings["max_hit_points"]

        self.rules = DndRuleLogic(self)
        context.add_character_ui("D&D 5E", self.render_stats)

    def apply_character(self, state: GameState) -> None:
        """
        Copy the protagonist's class into the sheet and recompute hit points
        from the class hit die and the race-adjusted constitution.
        """
        settings = self.settings_in(state)
        if state.protagonist.character_class:
            settings["class"] = state.protagonist.character_class
        constitution = self.rules.score(state, "constitution")
        settings["max_hit_points"] = max_hit_points(settings.get("class"), constitution)
        settings["hit_points"] = settings["max_hit_points"]

    def settings_in(self, state: GameState) -> dict[str, Any]:
        wrapper = state.find_plugin(PLUGIN_NAME)
        return wrapper.settings if wrapper is not None else self.settings

    def render_stats(self, state: GameState) -> Table:
        settings = self.settings_in(state)
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Ability")
        table.add_column("Score", justify="right")
        table.add_column("Mod", justify="right")
        for ability in ATTRIBUTES:
            score = int(settings.get(ability, 10))
            table.add_row(ability.capitalize(), str(score), f"{ability_modifier(score):+d}")
        table.add_row("Hit points", f"{settings.get('hit_points')}/{settings.get('max_hit_points')}", "")
        return table

    def get_rule_logic_provider(self) -> DndRuleLogic:
        return self.rules


def create_plugin() -> DndPlugin:
    return DndPlugin()
