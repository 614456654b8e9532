"""Services for Taleweaver."""

from .dice import DiceResult, DiceRoller
from .context import ContextBuilder

__all__ = ["DiceResult", "DiceRoller", "ContextBuilder"]
