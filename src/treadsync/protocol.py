"""
Wire codec for the LifeSpan DT3-BT console.

The console answers one 5-byte query at a time on a single notify
characteristic. This module turns the five query kinds into command bytes
and validates each response into a typed value. Decoding never raises:
a short or implausible frame falls back to the last accepted value for
that query, or None if nothing was accepted yet.
"""

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from .core import METERS_PER_MILE, MPS_PER_MPH

logger = logging.getLogger(__name__)


class Query(Enum):
    """The five metric queries understood by the console."""

    STEPS = "steps"
    DISTANCE = "distance"
    CALORIES = "calories"
    SPEED = "speed"
    TIME = "time"

    @property
    def command(self) -> bytes:
        """Fixed 5-byte command for this query."""
        return _COMMANDS[self]

    @property
    def min_length(self) -> int:
        """Shortest response frame that carries a value."""
        return 4 if self is Query.TIME else 3


_COMMANDS = {
    Query.STEPS: bytes([0xA1, 0x88, 0x00, 0x00, 0x00]),
    Query.CALORIES: bytes([0xA1, 0x87, 0x00, 0x00, 0x00]),
    Query.DISTANCE: bytes([0xA1, 0x85, 0x00, 0x00, 0x00]),
    Query.TIME: bytes([0xA1, 0x89, 0x00, 0x00, 0x00]),
    Query.SPEED: bytes([0xA1, 0x82, 0x00, 0x00, 0x00]),
}

# Order in which the link polls the console
POLL_SEQUENCE = (
    Query.STEPS,
    Query.DISTANCE,
    Query.CALORIES,
    Query.SPEED,
    Query.TIME,
)

# Plausibility limits in console units
MAX_STEPS = 50000
MAX_CALORIES = 5000
MAX_DISTANCE_MILES = 50.0
MAX_SPEED_MPH = 10.0
SPEED_JUMP_MPH = 3.0


class DecodeError(ValueError):
    """A response frame that cannot be turned into a plausible value."""


@dataclass(frozen=True)
class ElapsedTime:
    """Workout clock as shown on the console."""

    hours: int
    minutes: int
    seconds: int

    @property
    def total_seconds(self) -> int:
        return self.hours * 3600 + self.minutes * 60 + self.seconds

    def __str__(self) -> str:
        return f"{self.hours:02d}:{self.minutes:02d}:{self.seconds:02d}"


Value = Union[int, float, ElapsedTime]


@dataclass(frozen=True)
class SampleFrame:
    """One reading assembled from the latest answer to each query.

    Every field is optional because each one comes from a separate query
    that can fail on its own. Units: speed in m/s, distance in meters,
    steps and calories as raw cumulative counters.
    """

    speed: Optional[float] = None
    distance: Optional[float] = None
    steps: Optional[int] = None
    calories: Optional[int] = None
    time: Optional[ElapsedTime] = None

    def with_value(self, query: Query, value: Optional[Value]) -> "SampleFrame":
        """Return a copy with the field for ``query`` set to ``value``.

        A None value leaves the frame unchanged.
        """
        if value is None:
            return self
        return dataclasses.replace(self, **{query.value: value})

    def to_dict(self) -> dict[str, Any]:
        return {
            "speed": self.speed,
            "distance": self.distance,
            "steps": self.steps,
            "calories": self.calories,
            "time": (
                [self.time.hours, self.time.minutes, self.time.seconds]
                if self.time
                else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SampleFrame":
        time = data.get("time")
        return cls(
            speed=data.get("speed"),
            distance=data.get("distance"),
            steps=data.get("steps"),
            calories=data.get("calories"),
            time=ElapsedTime(*time) if time else None,
        )


def encode(query: Query) -> bytes:
    """Build the command bytes for a query."""
    return query.command


class ProtocolCodec:
    """Decodes console responses with last-known-good fallback."""

    def __init__(self) -> None:
        self._last_good: dict[Query, Value] = {}

    def encode(self, query: Query) -> bytes:
        return encode(query)

    def last_good(self, query: Query) -> Optional[Value]:
        """Last accepted value for a query, if any."""
        return self._last_good.get(query)

    def decode(self, query: Query, data: bytes) -> Optional[Value]:
        """Decode a response frame for ``query``.

        Args:
            query: The query this frame answers
            data: Raw notification payload

        Returns:
            The decoded value, the last accepted value when the frame is
            rejected, or None when nothing has been accepted yet
        """
        data = bytes(data)
        logger.debug(
            f"[{query.name}] received {len(data)} bytes: {data.hex(' ').upper()}"
        )

        try:
            value = self._parse(query, data)
        except DecodeError as e:
            fallback = self._last_good.get(query)
            logger.warning(f"[{query.name}] rejected frame: {e} (using {fallback})")
            return fallback

        self._check_jump(query, value)
        self._last_good[query] = value
        logger.debug(f"[{query.name}] accepted {value}")
        return value

    def reset(self) -> None:
        """Forget all cached values."""
        self._last_good.clear()

    def _parse(self, query: Query, data: bytes) -> Value:
        if len(data) < query.min_length:
            raise DecodeError(
                f"frame too short: {len(data)} bytes (need {query.min_length})"
            )

        if query is Query.STEPS:
            steps = (data[2] << 8) | data[1]
            if steps > MAX_STEPS:
                raise DecodeError(f"steps out of range: {steps}")
            return steps
        elif query is Query.CALORIES:
            calories = (data[2] << 8) | data[1]
            if calories > MAX_CALORIES:
                raise DecodeError(f"calories out of range: {calories}")
            return calories
        elif query is Query.DISTANCE:
            miles = data[1] + data[2] / 100
            if miles > MAX_DISTANCE_MILES:
                raise DecodeError(f"distance out of range: {miles:.2f} mi")
            return miles * METERS_PER_MILE
        elif query is Query.SPEED:
            mph = data[1] + data[2] / 100
            if mph > MAX_SPEED_MPH:
                raise DecodeError(f"speed out of range: {mph:.2f} mph")
            return mph * MPS_PER_MPH
        elif query is Query.TIME:
            hours, minutes, seconds = data[1], data[2], data[3]
            if hours >= 24 or minutes >= 60 or seconds >= 60:
                raise DecodeError(
                    f"time values invalid: {hours}h {minutes}m {seconds}s"
                )
            return ElapsedTime(hours, minutes, seconds)

        raise ValueError(f"Unknown query: {query!r}")

    def _check_jump(self, query: Query, value: Value) -> None:
        """Log suspicious changes against the last accepted value."""
        last = self._last_good.get(query)
        if last is None or query is Query.TIME:
            return

        if query is Query.SPEED:
            change = abs(value - last) / MPS_PER_MPH  # type: ignore[operator]
            if change > SPEED_JUMP_MPH:
                logger.warning(
                    f"[SPEED] large change: {last / MPS_PER_MPH:.2f} -> "  # type: ignore[operator]
                    f"{value / MPS_PER_MPH:.2f} mph"  # type: ignore[operator]
                )
        elif value < last:  # type: ignore[operator]
            logger.warning(
                f"[{query.name}] counter decreased: {last} -> {value} "
                "(console reset?)"
            )
