"""
Command definitions and auto-completion for the REPL.

Defines all available commands with metadata and provides a completer
for prompt_toolkit auto-completion.
"""

from dataclasses import dataclass
from typing import Any, List

from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document


@dataclass
class Command:
    """Command definition with metadata."""

    name: str
    aliases: List[str]
    description: str
    usage: str
    handler: str


COMMANDS = [
    Command(
        name="scan",
        aliases=["c", "connect"],
        description="Find the treadmill and connect",
        usage="scan",
        handler="cmd_scan",
    ),
    Command(
        name="retry",
        aliases=["r"],
        description="Retry after an error or when treadmill BLE was off",
        usage="retry",
        handler="cmd_retry",
    ),
    Command(
        name="forget",
        aliases=["f"],
        description="Forget the saved treadmill and disconnect",
        usage="forget",
        handler="cmd_forget",
    ),
    Command(
        name="status",
        aliases=["st"],
        description="Show link state and latest readings",
        usage="status",
        handler="cmd_status",
    ),
    Command(
        name="session",
        aliases=["se"],
        description="Show today's totals and activity segments",
        usage="session",
        handler="cmd_session",
    ),
    Command(
        name="save",
        aliases=["sv"],
        description="Save today's session and start a new one",
        usage="save",
        handler="cmd_save",
    ),
    Command(
        name="live",
        aliases=["l"],
        description="Toggle live display mode",
        usage="live",
        handler="cmd_live",
    ),
    Command(
        name="help",
        aliases=["h", "?"],
        description="Show all available commands",
        usage="help",
        handler="cmd_help",
    ),
    Command(
        name="quit",
        aliases=["q", "exit"],
        description="Exit the REPL",
        usage="quit",
        handler="cmd_quit",
    ),
]


def get_command(name: str) -> Command | None:
    """Get command by name or alias.

    Args:
        name: Command name or alias

    Returns:
        Command object if found, None otherwise
    """
    for cmd in COMMANDS:
        if cmd.name == name or name in cmd.aliases:
            return cmd
    return None


class CommandCompleter(Completer):
    """Auto-completion for command names."""

    def __init__(self) -> None:
        self._command_names = {cmd.name for cmd in COMMANDS}
        self._command_aliases = {alias for cmd in COMMANDS for alias in cmd.aliases}

    def get_completions(self, document: Document, complete_event) -> Any:  # type: ignore[no-untyped-def]
        """Get completion suggestions for current input.

        Args:
            document: Current input document
            complete_event: Completion event

        Yields:
            Completion objects for matching commands
        """
        text = document.text_before_cursor.lstrip()
        parts = text.split()

        # If no text yet, suggest nothing (avoid spam)
        if not text or len(parts) > 1:
            return

        partial_cmd = parts[0].lower()
        for name in sorted(self._command_names | self._command_aliases):
            if name.startswith(partial_cmd):
                yield Completion(name, start_position=-len(partial_cmd))
