"""
TreadSync - Daily step capture for LifeSpan treadmills

Captures telemetry from a LifeSpan DT3-BT console over Bluetooth LE and
folds many short connections into one validated daily session.
"""

from .core import __description__, __version__
from .coordinator import Coordinator
from .link import ConnectionState, LinkManager
from .protocol import ProtocolCodec, Query, SampleFrame
from .session import DailySession, SessionAggregator

__all__ = [
    "ConnectionState",
    "Coordinator",
    "DailySession",
    "LinkManager",
    "ProtocolCodec",
    "Query",
    "SampleFrame",
    "SessionAggregator",
]
