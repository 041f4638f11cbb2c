#!/usr/bin/env python
"""Basic functionality test for REPL components without device."""

from datetime import datetime

import pytest
from prompt_toolkit.document import Document
from rich.console import Console

from treadsync.commands import COMMANDS, CommandCompleter, get_command
from treadsync.core import METERS_PER_MILE, MPS_PER_MPH
from treadsync.display import DisplayManager
from treadsync.link import ConnectionState
from treadsync.protocol import ElapsedTime, SampleFrame
from treadsync.session import ActivitySegment, DailySession


def make_display() -> DisplayManager:
    return DisplayManager(Console(record=True, width=120))


def test_display():
    """Test display functionality."""
    display = make_display()

    display.print_banner()
    display.print_status(
        ConnectionState.connected(),
        SampleFrame(
            speed=2.5 * MPS_PER_MPH,
            distance=1.25 * METERS_PER_MILE,
            steps=4321,
            calories=150,
            time=ElapsedTime(0, 42, 5),
        ),
    )
    display.print_info("This is an info message")
    display.print_error("This is an error message")
    display.print_help(COMMANDS)

    output = display.console.export_text()
    assert "TreadSync" in output
    assert "2.5 mph" in output
    assert "1.25 mi" in output
    assert "4,321" in output
    assert "00:42:05" in output
    assert "Error: This is an error message" in output
    assert "forget" in output


def test_status_with_missing_readings():
    display = make_display()
    display.print_status(ConnectionState.error("not found"), SampleFrame(steps=10))

    output = display.console.export_text()
    assert "Error: not found" in output
    assert "-" in output


def test_session_display():
    display = make_display()
    start = datetime(2026, 3, 2, 9, 0)
    session = DailySession.new(start)
    display.print_session(session)
    assert "No activity segments recorded yet" in display.console.export_text()

    segment = ActivitySegment(
        start_time=datetime(2026, 3, 2, 9, 5),
        end_time=datetime(2026, 3, 2, 9, 35),
        steps=3000,
        distance=1.5 * METERS_PER_MILE,
        calories=120,
        avg_speed=2.0 * MPS_PER_MPH,
    )
    session = DailySession(
        id=session.id,
        start_date=start,
        last_updated=datetime(2026, 3, 2, 9, 35),
        total_steps=3000,
        total_distance=segment.distance,
        total_calories=120,
        segments=(segment,),
    )
    display.print_session(session)

    output = display.console.export_text()
    assert "Activity Segments" in output
    assert "3,000" in output
    assert "35m" in output


def test_format_functions():
    assert DisplayManager.format_speed(3.0 * MPS_PER_MPH) == "3.0 mph"
    assert DisplayManager.format_distance(METERS_PER_MILE) == "1.00 mi"
    assert DisplayManager.format_energy(45) == "45 kcal"
    assert DisplayManager.format_duration(DailySession.new()) == "--"


def test_live_toggle():
    display = make_display()
    display.update_live(sample=SampleFrame(steps=5))

    assert display.toggle_live() is True
    display.update_live(state=ConnectionState.connected(), sample=SampleFrame(steps=6))
    assert display.toggle_live() is False
    assert display.live_enabled is False


def test_commands():
    """Test command definitions."""
    names = {cmd.name for cmd in COMMANDS}
    assert {"scan", "retry", "forget", "status", "session", "save", "quit"} <= names

    assert get_command("c").name == "scan"
    assert get_command("connect").name == "scan"
    assert get_command("sv").name == "save"
    assert get_command("?").name == "help"
    assert get_command("speed") is None


@pytest.mark.parametrize(
    "text, expected",
    [
        ("sa", ["save"]),
        ("ret", ["retry"]),
        ("", []),
        ("save now", []),
    ],
)
def test_command_completer(text, expected):
    completer = CommandCompleter()
    completions = completer.get_completions(Document(text), None)
    assert [c.text for c in completions] == expected
