"""
Dice Roller Service for Taleweaver.

Rolls tabletop dice notation for rule providers:

    1d20        one twenty-sided die
    2d6+3       two six-sided dice plus three
    4d6dl1      four six-sided dice, drop the lowest one
    2d20kh1     two twenty-sided dice, keep the highest one (advantage)

Pass a seeded random.Random for reproducible rolls in tests.
"""

from __future__ import annotations

import random
import re
from typing import Optional

from pydantic import BaseModel


class DiceResult(BaseModel):
    """Outcome of a single roll expression."""

    expression: str
    rolls: list[int]
    kept: list[int]
    modifier: int = 0

    @property
    def total(self) -> int:
        return sum(self.kept) + self.modifier

    def __str__(self) -> str:
        return f"{self.expression}: {self.rolls} = {self.total}"


class DiceRoller:
    """
    Parses and rolls dice expressions.

    Shared with plugins through LibraryAccess.dice.
    """

    # XdY, optional keep/drop clause, optional flat modifier
    PATTERN = re.compile(
        r"^\s*(?P<count>\d*)d(?P<sides>\d+)"
        r"(?:(?P<op>kh|kl|dh|dl)(?P<n>\d+))?"
        r"\s*(?P<mod>[+-]\s*\d+)?\s*$",
        re.IGNORECASE,
    )

    MAX_DICE = 100

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng or random.Random()

    def roll(self, expression: str) -> DiceResult:
        """
        Roll a dice expression.

        Raises:
            ValueError: If the expression is malformed or out of range
        """
        match = self.PATTERN.match(expression)
        if not match:
            raise ValueError(f"Invalid dice expression: {expression!r}")

        count = int(match.group("count") or 1)
        sides = int(match.group("sides"))
        if not 1 <= count <= self.MAX_DICE or sides < 1:
            raise ValueError(f"Dice out of range: {expression!r}")

        rolls = [self._rng.randint(1, sides) for _ in range(count)]
        kept = self._apply_keep_drop(rolls, match.group("op"), match.group("n"))

        modifier = 0
        if match.group("mod"):
            modifier = int(match.group("mod").replace(" ", ""))

        return DiceResult(expression=expression.strip(), rolls=rolls, kept=kept, modifier=modifier)

    def total(self, expression: str) -> int:
        """Roll and return only the total."""
        return self.roll(expression).total

    def d20(self) -> int:
        return self._rng.randint(1, 20)

    @staticmethod
    def _apply_keep_drop(rolls: list[int], op: Optional[str], n: Optional[str]) -> list[int]:
        if not op:
            return list(rolls)

        amount = min(int(n), len(rolls))
        ordered = sorted(rolls)
        op = op.lower()
        if op == "kh":
            return ordered[len(ordered) - amount:]
        if op == "kl":
            return ordered[:amount]
        if op == "dh":
            return ordered[:len(ordered) - amount]
        # dl
        return ordered[amount:]
