"""Tests for daily session aggregation, segments and validation."""

from datetime import datetime, timedelta

import pytest

from fakes import FakeClock
from treadsync.core import SESSION_STATE_KEY
from treadsync.protocol import SampleFrame
from treadsync.session import (
    ActivitySegment,
    DailySession,
    SessionAggregator,
    SessionValidationError,
    delta,
    merge_baseline,
)
from treadsync.storage import StateStore

MORNING = datetime(2026, 3, 2, 8, 0)


@pytest.fixture
def clock():
    return FakeClock(MORNING)


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path)


@pytest.fixture
def aggregator(store, clock):
    return SessionAggregator(store=store, clock=clock)


def feed(aggregator, clock, *steps, seconds=10):
    for value in steps:
        clock.advance(seconds)
        aggregator.ingest(SampleFrame(steps=value))


@pytest.mark.parametrize(
    "current, previous, expected",
    [
        (None, 10, None),
        (None, None, None),
        (10, None, 0),
        (15, 10, 5),
        (10, 10, 0),
        (3, 10, 0),
        (2.5, 1.0, 1.5),
    ],
)
def test_delta(current, previous, expected):
    assert delta(current, previous) == expected


def test_merge_baseline_keeps_missing_fields():
    previous = SampleFrame(steps=100, calories=5, distance=20.0)
    merged = merge_baseline(previous, SampleFrame(calories=7))
    assert merged == SampleFrame(steps=100, calories=7, distance=20.0)


def test_first_sample_is_baseline(aggregator):
    assert aggregator.ingest(SampleFrame(steps=2500, calories=90)) is False
    assert aggregator.session.total_steps == 0
    assert aggregator.last_sample == SampleFrame(steps=2500, calories=90)


def test_totals_accumulate_deltas(aggregator, clock):
    aggregator.ingest(SampleFrame(steps=100, distance=10.0, calories=5))
    clock.advance(30)
    assert aggregator.ingest(SampleFrame(steps=150, distance=30.0, calories=8)) is True

    session = aggregator.session
    assert session.total_steps == 50
    assert session.total_distance == pytest.approx(20.0)
    assert session.total_calories == 3
    assert session.last_updated == clock.now


def test_repeated_readings_are_not_double_counted(aggregator, clock):
    # Two short connections; the second starts by re-reporting 150
    feed(aggregator, clock, 100, 120, 150)
    feed(aggregator, clock, 150, 150, 180, 200)
    assert aggregator.session.total_steps == 100


def test_counter_reset_contributes_zero(aggregator, clock):
    feed(aggregator, clock, 100, 150, 20, 50)
    assert aggregator.session.total_steps == 80
    assert aggregator.last_sample.steps == 50


def test_partial_samples_keep_baseline(aggregator, clock):
    aggregator.ingest(SampleFrame(steps=100, calories=5))
    clock.advance(5)
    aggregator.ingest(SampleFrame(calories=7))
    clock.advance(5)
    aggregator.ingest(SampleFrame(steps=120))

    assert aggregator.session.total_steps == 20
    assert aggregator.session.total_calories == 2
    assert aggregator.last_sample == SampleFrame(steps=120, calories=7)


def test_no_advance_keeps_last_updated(aggregator, clock):
    feed(aggregator, clock, 100, 110)
    updated = aggregator.session.last_updated
    feed(aggregator, clock, 110)
    assert aggregator.session.last_updated == updated


def test_segment_records_motion(aggregator, clock):
    start = clock.now
    aggregator.begin_segment(start)
    aggregator.ingest(SampleFrame(steps=100, speed=1.0))
    clock.advance(60)
    aggregator.ingest(SampleFrame(steps=160, speed=1.2))
    last_motion = clock.now
    clock.advance(60)
    aggregator.ingest(SampleFrame(steps=160, speed=0.0))

    segment = aggregator.end_segment()
    assert segment is not None
    assert segment.start_time == start
    assert segment.end_time == last_motion
    assert segment.steps == 60
    assert segment.avg_speed == pytest.approx(1.2)
    assert aggregator.session.segments == (segment,)
    assert not aggregator.segment_active


def test_segment_without_steps_is_discarded(aggregator, clock):
    aggregator.begin_segment()
    feed(aggregator, clock, 100, 100)
    assert aggregator.end_segment() is None
    assert aggregator.session.segments == ()


def test_end_segment_without_open_segment(aggregator):
    assert aggregator.end_segment() is None


def test_explicit_average_speed(aggregator, clock):
    aggregator.begin_segment()
    feed(aggregator, clock, 100, 130)
    segment = aggregator.end_segment(avg_speed=0.9)
    assert segment.avg_speed == 0.9


def test_one_segment_per_cycle(aggregator, clock):
    steps = 100
    for _ in range(3):
        aggregator.begin_segment()
        feed(aggregator, clock, steps, steps + 40)
        steps += 40
        aggregator.end_segment()
        clock.advance(120)

    # A cycle with no motion adds nothing
    aggregator.begin_segment()
    feed(aggregator, clock, steps)
    aggregator.end_segment()

    session = aggregator.session
    assert len(session.segments) == 3
    assert sum(s.steps for s in session.segments) == session.total_steps == 120
    aggregator.validate()


def test_state_restored_on_same_day(store, clock):
    first = SessionAggregator(store=store, clock=clock)
    first.begin_segment()
    feed(first, clock, 100, 150)
    first.end_segment()

    clock.advance(600)
    second = SessionAggregator(store=store, clock=clock)
    assert second.session == first.session
    assert second.last_sample == first.last_sample

    feed(second, clock, 170)
    assert second.session.total_steps == 70


def test_stale_state_discarded(store, clock):
    first = SessionAggregator(store=store, clock=clock)
    feed(first, clock, 100, 150)

    clock.advance(86400)
    second = SessionAggregator(store=store, clock=clock)
    assert second.session.id != first.session.id
    assert second.session.total_steps == 0
    assert second.last_sample is None


def test_unreadable_state_ignored(store, clock):
    store.save(SESSION_STATE_KEY, {"session": {"id": "x"}})
    aggregator = SessionAggregator(store=store, clock=clock)
    assert aggregator.session.total_steps == 0


def test_rollover_starts_new_session(aggregator, clock):
    aggregator.begin_segment()
    feed(aggregator, clock, 100, 150)
    old_id = aggregator.session.id

    clock.now = datetime(2026, 3, 3, 0, 5)
    assert aggregator.ingest(SampleFrame(steps=300)) is False

    session = aggregator.session
    assert session.id != old_id
    assert session.start_date == clock.now
    assert session.total_steps == 0
    assert aggregator.segment_active
    assert aggregator.last_sample == SampleFrame(steps=300)


def test_reset_session(aggregator, clock):
    feed(aggregator, clock, 100, 150)
    old_id = aggregator.session.id
    aggregator.reset_session("saved")
    assert aggregator.session.id != old_id
    assert aggregator.session.total_steps == 0
    assert aggregator.last_sample is None


def test_reset_session_keeping_baseline(aggregator, clock):
    feed(aggregator, clock, 100, 150)
    aggregator.reset_session("saved", keep_baseline=True)
    assert aggregator.session.total_steps == 0
    assert aggregator.last_sample.steps == 150

    feed(aggregator, clock, 175)
    assert aggregator.session.total_steps == 25


def test_advances(aggregator, clock):
    assert not aggregator.advances(SampleFrame(steps=10))
    feed(aggregator, clock, 100)
    assert aggregator.advances(SampleFrame(steps=101))
    assert not aggregator.advances(SampleFrame(steps=100))
    assert not aggregator.advances(SampleFrame(steps=40))
    assert not aggregator.advances(SampleFrame(speed=1.0))


def test_persist_failure_keeps_memory_state(tmp_path, clock):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    aggregator = SessionAggregator(store=StateStore(blocker), clock=clock)
    feed(aggregator, clock, 100, 125)
    assert aggregator.session.total_steps == 25


def test_session_dict_roundtrip():
    segment = ActivitySegment(
        start_time=MORNING,
        end_time=MORNING + timedelta(minutes=20),
        steps=2000,
        distance=1500.0,
        calories=80,
    )
    session = DailySession(
        id="abc",
        start_date=MORNING,
        last_updated=MORNING + timedelta(minutes=20),
        total_steps=2000,
        total_distance=1500.0,
        total_calories=80,
        segments=(segment,),
    )
    assert DailySession.from_dict(session.to_dict()) == session


# ========== Validation ==========


def make_session(minutes=60, steps=5000, segments=(), **kwargs):
    return DailySession(
        id="s1",
        start_date=MORNING,
        last_updated=MORNING + timedelta(minutes=minutes) if minutes is not None else None,
        total_steps=steps,
        total_distance=kwargs.get("distance", 3000.0),
        total_calories=kwargs.get("calories", 200),
        segments=tuple(segments),
    )


def make_segment(start_min, end_min, steps=1000):
    return ActivitySegment(
        start_time=MORNING + timedelta(minutes=start_min),
        end_time=MORNING + timedelta(minutes=end_min),
        steps=steps,
        distance=500.0,
        calories=40,
    )


def test_valid_session_passes(aggregator):
    aggregator.validate(
        make_session(segments=[make_segment(0, 20), make_segment(30, 60)])
    )


@pytest.mark.parametrize(
    "session, message",
    [
        (make_session(minutes=None), "no end time"),
        (make_session(minutes=0), "Invalid workout duration"),
        (make_session(minutes=24 * 60), "Invalid workout duration"),
        (make_session(steps=25000), "Step count"),
        (make_session(distance=40000.0), "Distance"),
        (make_session(calories=2500), "Calorie"),
        (make_session(segments=[make_segment(20, 10)]), "end time before start time"),
        (make_session(segments=[make_segment(30, 90)]), "outside workout time range"),
        (
            make_session(segments=[make_segment(0, 30), make_segment(20, 40)]),
            "overlaps",
        ),
    ],
)
def test_invalid_sessions(aggregator, session, message):
    with pytest.raises(SessionValidationError, match=message):
        aggregator.validate(session)


def test_overlong_segment(aggregator):
    session = make_session(
        minutes=14 * 60, steps=10000, segments=[make_segment(0, 13 * 60)]
    )
    with pytest.raises(SessionValidationError, match="unreasonably long"):
        aggregator.validate(session)
