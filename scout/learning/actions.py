"""Trade directions shared by the predictor, policy and fusion stages."""

from enum import Enum
from typing import Optional, Union


class Action(Enum):
    """Directional recommendation"""
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "Action":
        return Action.SELL if self is Action.BUY else Action.BUY


ACTIONS = [Action.BUY, Action.SELL]


def parse_action(value: Union[Action, str, None]) -> Optional[Action]:
    """Map an action or action name to Action. None if unknown."""
    if isinstance(value, Action):
        return value
    if isinstance(value, str):
        try:
            return Action(value.upper())
        except ValueError:
            return None
    return None
