"""
Daily session aggregation.

Turns a stream of cumulative console counters, sampled across many short
connections, into exactly-once session totals and activity segments. State
is persisted after every change so a restart on the same day resumes the
running total.
"""

import dataclasses
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, TypeVar

from .core import METERS_PER_MILE, SESSION_STATE_KEY, SessionSettings
from .observable import Observable
from .protocol import SampleFrame
from .storage import StateStore

logger = logging.getLogger(__name__)

Number = TypeVar("Number", int, float)


class SaveError(Exception):
    """A session could not be handed to the sink."""


class SessionValidationError(SaveError):
    """The session failed a plausibility check before saving."""


@dataclass(frozen=True)
class ActivitySegment:
    """One contiguous block of walking within a session."""

    start_time: datetime
    end_time: datetime
    steps: int
    distance: float
    calories: int
    avg_speed: Optional[float] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def duration(self) -> timedelta:
        return self.end_time - self.start_time

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "steps": self.steps,
            "distance": self.distance,
            "calories": self.calories,
            "avg_speed": self.avg_speed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ActivitySegment":
        return cls(
            id=data["id"],
            start_time=datetime.fromisoformat(data["start_time"]),
            end_time=datetime.fromisoformat(data["end_time"]),
            steps=data["steps"],
            distance=data["distance"],
            calories=data["calories"],
            avg_speed=data.get("avg_speed"),
        )


@dataclass(frozen=True)
class DailySession:
    """Running totals for one calendar day.

    Distance is in meters, speeds in m/s.
    """

    id: str
    start_date: datetime
    last_updated: Optional[datetime] = None
    total_steps: int = 0
    total_distance: float = 0.0
    total_calories: int = 0
    segments: tuple[ActivitySegment, ...] = ()

    @classmethod
    def new(cls, start: Optional[datetime] = None) -> "DailySession":
        return cls(id=str(uuid.uuid4()), start_date=start or datetime.now())

    @property
    def has_data(self) -> bool:
        return self.total_steps > 0 or self.total_distance > 0 or self.total_calories > 0

    @property
    def duration(self) -> Optional[timedelta]:
        if self.last_updated is None:
            return None
        return self.last_updated - self.start_date

    @property
    def total_distance_miles(self) -> float:
        return self.total_distance / METERS_PER_MILE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start_date": self.start_date.isoformat(),
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "total_steps": self.total_steps,
            "total_distance": self.total_distance,
            "total_calories": self.total_calories,
            "segments": [segment.to_dict() for segment in self.segments],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DailySession":
        last_updated = data.get("last_updated")
        return cls(
            id=data["id"],
            start_date=datetime.fromisoformat(data["start_date"]),
            last_updated=datetime.fromisoformat(last_updated) if last_updated else None,
            total_steps=data["total_steps"],
            total_distance=data["total_distance"],
            total_calories=data["total_calories"],
            segments=tuple(
                ActivitySegment.from_dict(item) for item in data.get("segments", [])
            ),
        )


@dataclass
class _OpenSegment:
    start_time: datetime
    steps: int = 0
    distance: float = 0.0
    calories: int = 0
    last_motion: Optional[datetime] = None
    speed_total: float = 0.0
    speed_count: int = 0

    @property
    def average_speed(self) -> Optional[float]:
        if not self.speed_count:
            return None
        return self.speed_total / self.speed_count


def delta(current: Optional[Number], previous: Optional[Number]) -> Optional[Number]:
    """Contribution of a new cumulative reading against the baseline.

    Returns None when there is no reading. A missing baseline or a counter
    that went backwards (console reset) contributes 0; the caller adopts
    ``current`` as the new baseline in both cases.
    """
    if current is None:
        return None
    if previous is None:
        return 0
    change = current - previous
    if change < 0:
        logger.warning(
            f"Treadmill counter reset detected (previous: {previous}, current: {current})"
        )
        return 0
    return change


def merge_baseline(previous: SampleFrame, sample: SampleFrame) -> SampleFrame:
    """New baseline: fields present in ``sample`` replace the old ones."""
    updates = {
        f.name: getattr(sample, f.name)
        for f in dataclasses.fields(sample)
        if getattr(sample, f.name) is not None
    }
    return dataclasses.replace(previous, **updates)


class SessionAggregator:
    """Owns the daily session, its segments and its persistence."""

    def __init__(
        self,
        store: Optional[StateStore] = None,
        settings: Optional[SessionSettings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Load today's session from storage or start a fresh one.

        Args:
            store: Persistent storage for the session state
            settings: Plausibility and segmentation tunables
            clock: Source of the current local time
        """
        self.store = store or StateStore()
        self.settings = settings or SessionSettings()
        self._clock = clock
        self._last_sample: Optional[SampleFrame] = None
        self._segment: Optional[_OpenSegment] = None

        session = self._restore()
        self.current_session: Observable[DailySession] = Observable(session)

    @property
    def session(self) -> DailySession:
        return self.current_session.value

    @property
    def last_sample(self) -> Optional[SampleFrame]:
        return self._last_sample

    @property
    def segment_active(self) -> bool:
        return self._segment is not None

    # ========== Ingest ==========

    def ingest(self, sample: SampleFrame, now: Optional[datetime] = None) -> bool:
        """Apply a cumulative reading to the session.

        Args:
            sample: Latest frame from the console
            now: Reading time (defaults to the clock)

        Returns:
            True if any metric moved forward
        """
        now = now or self._clock()
        self._rollover_if_needed(now)

        previous = self._last_sample
        if previous is None:
            # First reading is the baseline so the console's own total since
            # power-on is not counted again
            self._last_sample = sample
            self._persist()
            logger.info(
                f"Set baseline: steps={sample.steps}, distance={sample.distance}, "
                f"calories={sample.calories}"
            )
            return False

        steps = delta(sample.steps, previous.steps) or 0
        distance = delta(sample.distance, previous.distance) or 0.0
        calories = delta(sample.calories, previous.calories) or 0
        advanced = steps > 0 or distance > 0 or calories > 0

        segment = self._segment
        if (
            segment is not None
            and sample.speed is not None
            and sample.speed >= self.settings.moving_speed
        ):
            segment.speed_total += sample.speed
            segment.speed_count += 1

        if advanced:
            session = self.session
            self._set_session(
                dataclasses.replace(
                    session,
                    total_steps=session.total_steps + steps,
                    total_distance=session.total_distance + distance,
                    total_calories=session.total_calories + calories,
                    last_updated=now,
                )
            )
            if segment is not None:
                segment.steps += steps
                segment.distance += distance
                segment.calories += calories
                segment.last_motion = now
            logger.debug(
                f"Delta: +{steps} steps, +{distance:.1f} m, +{calories} kcal "
                f"(total: {self.session.total_steps} steps)"
            )

        self._last_sample = merge_baseline(previous, sample)
        self._persist()
        return advanced

    def advances(self, sample: SampleFrame) -> bool:
        """Whether ``sample`` would move any metric forward from the baseline."""
        previous = self._last_sample
        if previous is None:
            return False
        return any(
            current is not None and last is not None and current > last
            for current, last in (
                (sample.steps, previous.steps),
                (sample.distance, previous.distance),
                (sample.calories, previous.calories),
            )
        )

    # ========== Segments ==========

    def begin_segment(self, now: Optional[datetime] = None) -> None:
        """Start accruing a new activity segment."""
        now = now or self._clock()
        if self._segment is not None:
            logger.debug("Replacing open segment")
        self._segment = _OpenSegment(start_time=now)
        logger.info("Started new activity segment")

    def end_segment(
        self, avg_speed: Optional[float] = None
    ) -> Optional[ActivitySegment]:
        """Close the open segment and record it if it has steps.

        The segment ends at its last forward motion, so it never extends
        past the session's last update.

        Args:
            avg_speed: Average speed in m/s (computed from readings if None)

        Returns:
            The recorded segment, or None if nothing was recorded
        """
        segment, self._segment = self._segment, None
        if segment is None:
            logger.debug("No active segment to end")
            return None
        if segment.steps <= 0 or segment.last_motion is None:
            logger.info("Segment had no steps, nothing recorded")
            return None
        if segment.last_motion <= segment.start_time:
            logger.warning("Segment has no duration, nothing recorded")
            return None

        record = ActivitySegment(
            start_time=segment.start_time,
            end_time=segment.last_motion,
            steps=segment.steps,
            distance=segment.distance,
            calories=segment.calories,
            avg_speed=avg_speed if avg_speed is not None else segment.average_speed,
        )
        session = self.session
        self._set_session(
            dataclasses.replace(session, segments=session.segments + (record,))
        )
        self._persist()
        logger.info(
            f"Ended segment: {record.steps} steps, "
            f"{record.distance / METERS_PER_MILE:.2f} mi"
        )
        return record

    # ========== Lifecycle ==========

    def reset_session(
        self,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        keep_baseline: bool = False,
    ) -> None:
        """Replace the session with an empty one starting now.

        With ``keep_baseline`` the next reading is measured against the last
        one, so nothing walked since the old session was captured is lost.
        """
        self._set_session(DailySession.new(now or self._clock()))
        if not keep_baseline:
            self._last_sample = None
        self._segment = None
        self._persist()
        if reason:
            logger.info(f"Reset daily session ({reason})")
        else:
            logger.info("Reset daily session")

    def _rollover_if_needed(self, now: datetime) -> None:
        if self.session.start_date.date() == now.date():
            return
        was_active = self._segment is not None
        self.reset_session(reason="new day", now=now)
        if was_active:
            self.begin_segment(now)

    # ========== Validation ==========

    def validate(self, session: Optional[DailySession] = None) -> None:
        """Check a session is plausible enough to save.

        Raises:
            SessionValidationError: With the first rule that failed
        """
        session = session or self.session
        settings = self.settings

        end = session.last_updated
        if end is None:
            raise SessionValidationError("Invalid session - no end time")

        seconds = (end - session.start_date).total_seconds()
        if not 0 < seconds < 86400:
            raise SessionValidationError("Invalid workout duration")

        hours = seconds / 3600
        max_steps = settings.max_steps_per_hour * hours * settings.ceiling_buffer
        if session.total_steps > max_steps:
            raise SessionValidationError(
                "Step count seems unreasonably high - please check data"
            )

        max_distance = min(
            settings.max_distance,
            settings.max_distance_per_hour * hours * settings.ceiling_buffer,
        )
        if session.total_distance > max_distance:
            raise SessionValidationError(
                "Distance seems unreasonably high - please check data"
            )

        max_calories = min(
            settings.max_calories,
            settings.max_calories_per_hour * hours * settings.ceiling_buffer,
        )
        if session.total_calories > max_calories:
            raise SessionValidationError(
                "Calorie count seems unreasonably high - please check data"
            )

        previous_end: Optional[datetime] = None
        for index, segment in enumerate(session.segments, start=1):
            if segment.end_time <= segment.start_time:
                raise SessionValidationError(
                    f"Invalid segment #{index} - end time before start time"
                )
            if segment.duration.total_seconds() >= settings.max_segment_seconds:
                raise SessionValidationError(
                    f"Segment #{index} duration is unreasonably long"
                )
            if segment.start_time < session.start_date or segment.end_time > end:
                raise SessionValidationError(
                    f"Segment #{index} is outside workout time range"
                )
            if previous_end is not None and segment.start_time < previous_end:
                raise SessionValidationError(
                    f"Segment #{index} overlaps the previous segment"
                )
            previous_end = segment.end_time

        logger.info("Session validation passed")

    # ========== Persistence ==========

    def _set_session(self, session: DailySession) -> None:
        self.current_session.set(session)

    def _persist(self) -> None:
        state = {
            "session": self.session.to_dict(),
            "last_sample": self._last_sample.to_dict() if self._last_sample else None,
        }
        if not self.store.save(SESSION_STATE_KEY, state):
            logger.warning("Session state not persisted; keeping it in memory")

    def _restore(self) -> DailySession:
        now = self._clock()
        data = self.store.load(SESSION_STATE_KEY)
        if not data:
            return DailySession.new(now)

        try:
            session = DailySession.from_dict(data["session"])
            last_sample = data.get("last_sample")
            sample = SampleFrame.from_dict(last_sample) if last_sample else None
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring unreadable session state: {e}")
            return DailySession.new(now)

        if session.start_date.date() != now.date():
            logger.warning(f"Discarded stale session from {session.start_date:%Y-%m-%d}")
            return DailySession.new(now)

        self._last_sample = sample
        logger.info(f"Restored today's session: {session.total_steps} steps")
        return session

