"""
Wires the treadmill link to the daily session.

The coordinator is the only component that sees both the link and the
aggregator. It turns connection transitions into segment boundaries, feeds
samples into the session, pauses segments when the walker steps off, and
hands finished sessions to the sink.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from .core import SessionSettings
from .link import ConnectionState, LinkManager, StateKind
from .observable import Observable
from .protocol import SampleFrame
from .session import DailySession, SaveError, SessionAggregator
from .sink import SessionSink

logger = logging.getLogger(__name__)


class Coordinator:
    """Orchestrates link events, session updates and saving."""

    def __init__(
        self,
        link: LinkManager,
        aggregator: SessionAggregator,
        sink: SessionSink,
        settings: Optional[SessionSettings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.link = link
        self.aggregator = aggregator
        self.sink = sink
        self.settings = settings or aggregator.settings
        self._clock = clock

        self._was_connected = False
        self._paused = False
        self._saving = False
        self._last_motion: Optional[datetime] = None
        self._idle_task: Optional[asyncio.Task] = None
        self._unsubscribe: list[Callable[[], None]] = []

    # ========== Observables ==========

    @property
    def connection_state(self) -> Observable[ConnectionState]:
        return self.link.connection_state

    @property
    def current_sample(self) -> Observable[SampleFrame]:
        return self.link.current_sample

    @property
    def current_session(self) -> Observable[DailySession]:
        return self.aggregator.current_session

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def last_motion(self) -> Optional[datetime]:
        return self._last_motion

    # ========== Lifecycle ==========

    def attach(self) -> None:
        """Subscribe to link events."""
        if self._unsubscribe:
            return
        self._unsubscribe = [
            self.link.connection_state.subscribe(self._on_state),
            self.link.current_sample.subscribe(self._on_sample),
        ]
        self._on_state(self.link.state)

    def detach(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        self._stop_idle_check()

    async def start(self) -> ConnectionState:
        """Attach to the link and connect to the treadmill."""
        logger.info("Starting treadsync coordinator...")
        self.attach()
        return await self.link.start_scanning()

    async def stop(self) -> None:
        """Close the link, recording the open segment first."""
        await self.link.stop()
        self.detach()

    # ========== Commands ==========

    async def start_scanning(self) -> ConnectionState:
        return await self.link.start_scanning()

    async def retry_connection(self) -> ConnectionState:
        return await self.link.retry_connection()

    async def forget_device(self) -> None:
        await self.link.forget_device()

    async def save_session(self) -> DailySession:
        """Validate the current session and hand it to the sink.

        Returns:
            The session that was saved

        Raises:
            SaveError: If there is nothing to save, validation fails or the
                sink fails; the session is left untouched
        """
        session = self.aggregator.session
        if session.total_steps <= 0:
            raise SaveError("No treadmill data to save yet")

        self.aggregator.validate(session)

        logger.info(
            f"Saving workout: {session.total_steps} steps, "
            f"{session.total_distance_miles:.2f} mi, {session.total_calories} kcal"
        )
        self._saving = True
        try:
            await self.sink.save(session)
        finally:
            self._saving = False

        self.aggregator.reset_session(reason="saved", keep_baseline=True)
        if self.link.state.is_connected:
            self._begin_segment()
        logger.info("Workout saved and session reset")
        return session

    # ========== Event handlers ==========

    def _on_state(self, state: ConnectionState) -> None:
        if state.is_connected and not self._was_connected:
            logger.info("Treadmill connected")
            self._was_connected = True
            self._begin_segment()
            self._start_idle_check()
        elif not state.is_connected and self._was_connected:
            logger.info("Treadmill disconnected")
            self._was_connected = False
            self._stop_idle_check()
            self.aggregator.end_segment()
            self._paused = False

        if state.kind is StateKind.ERROR:
            logger.warning(f"Connection error: {state.reason}")

    def _on_sample(self, sample: SampleFrame) -> None:
        if not self.link.state.is_connected:
            return

        if self._saving:
            # Baseline stays put, so the next sample after the save catches up
            return

        now = self._clock()
        if self._paused and self.aggregator.advances(sample):
            logger.info("Motion resumed, starting new segment")
            self._paused = False
            # Open before ingesting so the resuming delta lands in the segment
            self.aggregator.begin_segment(self._last_motion or now)

        if self.aggregator.ingest(sample, now):
            self._last_motion = now

    def check_idle(self, now: Optional[datetime] = None) -> bool:
        """End the open segment if nothing has moved for the idle window.

        Returns:
            True if the segment was auto-paused
        """
        if self._paused or self._last_motion is None:
            return False
        if not self.aggregator.segment_active:
            return False

        now = now or self._clock()
        idle = (now - self._last_motion).total_seconds()
        if idle <= self.settings.idle_timeout:
            return False

        logger.info(f"Auto-pause detected (no activity for {int(idle // 60)} min)")
        self.aggregator.end_segment()
        self._paused = True
        return True

    def _begin_segment(self) -> None:
        now = self._clock()
        self.aggregator.begin_segment(now)
        self._paused = False
        self._last_motion = now

    # ========== Idle check ==========

    def _start_idle_check(self) -> None:
        self._stop_idle_check()
        self._idle_task = asyncio.create_task(self._idle_loop())

    def _stop_idle_check(self) -> None:
        task = self._idle_task
        self._idle_task = None
        if task and not task.done():
            task.cancel()

    async def _idle_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.idle_check_interval)
            self.check_idle()
