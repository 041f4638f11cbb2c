"""
Destinations for finished daily sessions.
"""

import json
import logging
from pathlib import Path
from typing import Protocol

from .session import DailySession, SaveError

logger = logging.getLogger(__name__)


class SinkError(SaveError):
    """The sink refused or failed to store a session."""


class SessionSink(Protocol):
    """Long-term storage for saved sessions.

    Implementations do their own unit conversions and must tolerate the
    same session being saved twice after a partial failure.
    """

    async def save(self, session: DailySession) -> None:
        ...


class JsonFileSink:
    """Writes each saved session to its own JSON file named by session id."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path_for(self, session: DailySession) -> Path:
        return self.directory / f"{session.start_date:%Y-%m-%d}_{session.id}.json"

    async def save(self, session: DailySession) -> None:
        """Write the session; saving the same id again overwrites it.

        Raises:
            SinkError: If the file cannot be written
        """
        path = self.path_for(session)
        payload = session.to_dict()
        payload["total_distance_miles"] = round(session.total_distance_miles, 2)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                json.dump(payload, f, indent=2)
        except OSError as e:
            raise SinkError(f"Could not write {path}: {e}") from e
        logger.info(f"Saved session to {path}")
