"""
Main REPL application for LifeSpan treadmill step capture.

Interactive command loop with async support, auto-completion,
and live readings display.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.formatted_text import FormattedText
from prompt_toolkit.history import InMemoryHistory

from .commands import COMMANDS, CommandCompleter, get_command
from .coordinator import Coordinator
from .display import DisplayManager
from .link import ConnectionState, LinkManager, StateKind
from .session import SaveError, SessionAggregator
from .sink import JsonFileSink
from .storage import StateStore

logger = logging.getLogger(__name__)


def build_coordinator(
    data_dir: Optional[Path] = None, sessions_dir: Optional[Path] = None
) -> Coordinator:
    """Assemble the link, aggregator and sink around one state directory."""
    store = StateStore(data_dir)
    link = LinkManager(store=store)
    aggregator = SessionAggregator(store=store)
    sink = JsonFileSink(sessions_dir or store.directory / "sessions")
    return Coordinator(link, aggregator, sink)


class TreadSyncREPL:
    """Interactive REPL for daily treadmill step capture."""

    def __init__(self, coordinator: Optional[Coordinator] = None) -> None:
        """Initialize REPL with coordinator and display manager."""
        self.coordinator = coordinator or build_coordinator()
        self.display = DisplayManager()
        self.running = False

        self.coordinator.connection_state.subscribe(self._on_state_change)

        # Command history and name completion
        self.session: PromptSession = PromptSession(
            completer=CommandCompleter(),
            history=InMemoryHistory(),
            enable_history_search=True,
        )

        # Feeds new readings to the live view
        self._update_task: Optional[asyncio.Task] = None

    async def run(self) -> None:
        """Run the main REPL loop."""
        self.running = True
        self.display.print_banner()

        # Live view follows every new sample
        self._update_task = asyncio.create_task(self._update_loop())

        # Remembered console first, then a scan
        self.display.console.print("Looking for the treadmill...")
        state = await self.coordinator.start()
        if state.is_connected:
            self.display.console.print("✓ Connected successfully\n")
        else:
            self.display.console.print(
                f"⚠ Not connected ({state}). Use 'scan' or 'retry' to try again.\n"
            )

        try:
            while self.running:
                try:
                    text = await self.session.prompt_async(self._get_prompt())
                    if text.strip():
                        await self._handle_input(text.strip())
                except KeyboardInterrupt:
                    # Just show new prompt on Ctrl+C
                    self.display.console.print()
                    continue

        except EOFError:
            # End of input (Ctrl+D)
            await self.cmd_quit([])
        finally:
            self.running = False
            if self._update_task:
                self._update_task.cancel()
                try:
                    await self._update_task
                except asyncio.CancelledError:
                    pass

    def _get_prompt(self) -> FormattedText:
        """Get dynamic prompt based on connection state."""
        link = self.coordinator.link
        if link.state.is_connected:
            label = link.device_name or "treadmill"
        else:
            label = link.state.kind.value
        return FormattedText([("class:prompt", f"[{label}] > ")])

    async def _handle_input(self, text: str) -> None:
        """Parse and dispatch command.

        Args:
            text: Raw user input text
        """
        parts = text.split(maxsplit=1)
        if not parts:
            return

        cmd_name = parts[0].lower()
        args = parts[1].split() if len(parts) > 1 else []

        cmd = get_command(cmd_name)
        if not cmd:
            self.display.print_error(
                f"Unknown command: {cmd_name}. Type 'help' for available commands."
            )
            return

        handler = getattr(self, cmd.handler, None)
        if handler is None:
            self.display.print_error(f"Handler not found: {cmd.handler}")
            return

        try:
            await handler(args)
        except Exception as e:
            self.display.print_error(f"Command failed: {e}")
            logger.exception("Command exception")

    async def _update_loop(self) -> None:
        """Background task feeding new readings to the live display."""
        try:
            async for sample in self.coordinator.current_sample.updates():
                if self.display.live_enabled:
                    self.display.update_live(sample=sample)
        except asyncio.CancelledError:
            pass

    def _on_state_change(self, state: ConnectionState) -> None:
        """Report link transitions that need the user's attention."""
        if self.display.live_enabled:
            self.display.update_live(state=state)
            return
        if state.kind is StateKind.LINK_SILENTLY_OFF:
            self.display.print_info(
                "Treadmill Bluetooth appears to be off. Turn it on and use 'retry'."
            )
        elif state.kind is StateKind.ERROR:
            self.display.print_error(f"{state.reason}. Use 'retry' to reconnect.")

    # ========== Command Handlers ==========

    async def cmd_scan(self, args: list) -> None:
        """Find the treadmill and connect."""
        if self.coordinator.link.state.is_connected:
            self.display.print_info("Already connected")
            return

        self.display.print_info("Scanning for treadmill...")
        state = await self.coordinator.start_scanning()
        if state.is_connected:
            self.display.print_info(
                f"Connected to {self.coordinator.link.device_name or 'treadmill'}"
            )

    async def cmd_retry(self, args: list) -> None:
        """Retry the connection after an error."""
        state = await self.coordinator.retry_connection()
        if state.is_connected:
            self.display.print_info("Reconnected")

    async def cmd_forget(self, args: list) -> None:
        """Forget the saved treadmill."""
        await self.coordinator.forget_device()
        self.display.print_info("Forgot saved treadmill")

    async def cmd_status(self, args: list) -> None:
        """Show link state and latest readings."""
        self.display.print_status(
            self.coordinator.connection_state.value,
            self.coordinator.current_sample.value,
        )

    async def cmd_session(self, args: list) -> None:
        """Show today's session."""
        self.display.print_session(self.coordinator.current_session.value)

    async def cmd_save(self, args: list) -> None:
        """Save today's session."""
        try:
            session = await self.coordinator.save_session()
        except SaveError as e:
            self.display.print_error(f"Save failed: {e}")
            return
        self.display.print_info(
            f"Saved {session.total_steps:,} steps "
            f"({session.total_distance_miles:.2f} mi)"
        )

    async def cmd_live(self, args: list) -> None:
        """Toggle live display mode."""
        enabled = self.display.toggle_live()
        if enabled:
            self.display.update_live(
                self.coordinator.connection_state.value,
                self.coordinator.current_sample.value,
            )
        else:
            self.display.print_info("Live display disabled")

    async def cmd_help(self, args: list) -> None:
        """Show all available commands."""
        self.display.print_help(COMMANDS)

    async def cmd_quit(self, args: list) -> None:
        """Exit the REPL."""
        if self.display.live_enabled:
            self.display.stop_live()

        self.display.print_info("Disconnecting...")
        await self.coordinator.stop()

        self.display.console.print("[cyan]Goodbye![/cyan]")
        self.running = False


async def run_cli_command(command: str, coordinator: Coordinator) -> int:
    """Run a single CLI command.

    Returns:
        Process exit status
    """
    display = DisplayManager()

    if command == "forget":
        await coordinator.forget_device()
        display.print_info("Forgot saved treadmill")
        return 0

    if command == "session":
        display.print_session(coordinator.current_session.value)
        return 0

    if command == "save":
        try:
            session = await coordinator.save_session()
        except SaveError as e:
            display.print_error(f"Save failed: {e}")
            return 1
        display.print_info(f"Saved {session.total_steps:,} steps")
        return 0

    if command == "status":
        try:
            display.print_info("Connecting to treadmill...")
            state = await coordinator.start()
            if not state.is_connected:
                display.print_error(f"Failed to connect to treadmill ({state})")
                return 1
            # Wait for one polling cycle so every reading has arrived
            await asyncio.sleep(2)
            display.print_status(
                coordinator.connection_state.value, coordinator.current_sample.value
            )
            return 0
        finally:
            await coordinator.stop()

    display.print_error(f"Unknown command: {command}")
    return 1


def main() -> None:
    """Entry point for the REPL application."""
    parser = argparse.ArgumentParser(
        description="LifeSpan treadmill daily step capture",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  treadsync                  # Start interactive REPL
  treadsync --status         # Connect and show current readings
  treadsync --session        # Show today's stored session
  treadsync --save           # Save today's session
  treadsync --forget         # Forget the saved treadmill
        """,
    )

    parser.add_argument("--status", action="store_true", help="Show device readings")
    parser.add_argument("--session", action="store_true", help="Show today's session")
    parser.add_argument("--save", action="store_true", help="Save today's session")
    parser.add_argument("--forget", action="store_true", help="Forget saved treadmill")
    parser.add_argument(
        "--data-dir", type=Path, help="Directory for persisted state"
    )
    parser.add_argument(
        "--sessions-dir", type=Path, help="Directory saved sessions are written to"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Show debug logging"
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
    )

    commands = [
        name
        for name in ("status", "session", "save", "forget")
        if getattr(args, name)
    ]
    if len(commands) > 1:
        print("Error: Only one command can be specified at a time", file=sys.stderr)
        sys.exit(1)

    coordinator = build_coordinator(args.data_dir, args.sessions_dir)

    try:
        if commands:
            sys.exit(asyncio.run(run_cli_command(commands[0], coordinator)))
        asyncio.run(TreadSyncREPL(coordinator).run())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
