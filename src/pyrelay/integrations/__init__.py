"""Typed call sites built on the correlation client and state cache."""

from pyrelay.integrations.conditions import ConditionMarkers
from pyrelay.integrations.dice import DiceRoller
from pyrelay.integrations.local import LocalValues

__all__ = ["ConditionMarkers", "DiceRoller", "LocalValues"]
