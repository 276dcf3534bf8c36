from .types import Direction, SignalStatus, Outcome, PositionStatus
from .positions import RawPosition, Fill, PositionOpenEvent, NotificationEvent

__all__ = [
    "Direction",
    "SignalStatus",
    "Outcome",
    "PositionStatus",
    "RawPosition",
    "Fill",
    "PositionOpenEvent",
    "NotificationEvent",
]
