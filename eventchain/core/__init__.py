"""eventchain.core

Core primitives.

If a module needs to exist, it should probably depend only on this package.
"""

from .config import Config
from .exceptions import EventChainError
from .models import ChainTip, EventEnvelope, EventKind, EventMessage, EventMetadata, EventPayload
from .time import MillisClock, parse_dt, utc_now

__all__ = [
    "ChainTip",
    "Config",
    "EventChainError",
    "EventEnvelope",
    "EventKind",
    "EventMessage",
    "EventMetadata",
    "EventPayload",
    "MillisClock",
    "parse_dt",
    "utc_now",
]
