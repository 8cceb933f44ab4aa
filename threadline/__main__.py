import os
import sys
import time
import signal
import asyncio
import argparse
from typing import Optional, List

# Third-party imports
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt, Confirm
from rich.table import Table
from rich.text import Text
from rich.rule import Rule
from rich.align import Align
from rich import box

# prompt_toolkit for input
from prompt_toolkit import PromptSession
from prompt_toolkit.document import Document
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import InMemoryHistory
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.key_binding import KeyBindings

from .cache import ChatStore
from .client import ApiClient
from .config import ChatConfig, load_config
from .db import SnapshotDatabase
from .models import SEND_ERROR_MESSAGE, ChatMessage, Thread
from .preloader import Preloader
from .session import SendOutcome, SessionController
from .utils import configure_logging, load_all_dotenv, load_settings, save_settings

# ──────────────────────────────────────────────────────────────────────────────
# Constants
# ──────────────────────────────────────────────────────────────────────────────

BANNER = r"""
  ╔╦╗╦ ╦╦═╗╔═╗╔═╗╔╦╗╦  ╦╔╗╔╔═╗
   ║ ╠═╣╠╦╝║╣ ╠═╣ ║║║  ║║║║║╣
   ╩ ╩ ╩╩╚═╚═╝╩ ╩═╩╝╩═╝╩╝╚╝╚═╝
"""

SUB_DESCRIPTION = "Conversations with your agent, cached locally"

COMMANDS_HELP = {
    "/new-thread": "Start a new conversation",
    "/switch-thread": "Switch to a different thread",
    "/delete-thread": "Delete a thread",
    "/threads": "List cached threads",
    "/refresh": "Reload the thread list from the server",
    "/help": "Show this help message",
    "/exit": "Exit Threadline",
}

KEYBOARD_SHORTCUTS = {
    "Alt+Enter": "Insert new line",
    "Ctrl+C": "Stop streaming",
    "Ctrl+C ×2": "Exit Threadline",
    "↑ / ↓": "Browse history",
}

console = Console()


class CommandCompleter(Completer):
    """Autocomplete for /commands."""

    def __init__(self):
        self.commands = list(COMMANDS_HELP.keys())

    def get_completions(self, document: Document, complete_event):
        text = document.text_before_cursor
        if text.startswith("/"):
            for cmd in self.commands:
                if cmd.startswith(text):
                    yield Completion(cmd, start_position=-len(text))


# ──────────────────────────────────────────────────────────────────────────────
# ChatCLI
# ──────────────────────────────────────────────────────────────────────────────


class ChatCLI:
    # Seconds within which a second Ctrl+C terminates the session
    _DOUBLE_CTRL_C_THRESHOLD = 1.5

    @staticmethod
    def _create_input_key_bindings() -> KeyBindings:
        """Create key bindings for the chat input.

        - Enter           → submit the input
        - Escape+Enter    → insert a newline  (Alt+Enter on most terminals)
        """
        kb = KeyBindings()

        @kb.add("enter")
        def _submit(event):
            event.current_buffer.validate_and_handle()

        @kb.add("escape", "enter")  # Alt+Enter / Escape then Enter
        def _newline(event):
            event.current_buffer.insert_text("\n")

        return kb

    def __init__(self, config: ChatConfig):
        self.config = config
        self.db: Optional[SnapshotDatabase] = None
        self.api: Optional[ApiClient] = None
        self.store: Optional[ChatStore] = None
        self.controller: Optional[SessionController] = None
        self.input_history = InMemoryHistory()
        self.session = PromptSession(
            completer=CommandCompleter(),
            history=self.input_history,
            key_bindings=self._create_input_key_bindings(),
            multiline=True,
        )
        self._last_ctrl_c_time: float = 0.0  # For double Ctrl+C detection
        self._printed: dict = {}  # message id -> characters already written
        self._status = None  # spinner shown until the first streamed token
        self.settings = load_settings()

    # ── Banner ────────────────────────────────────────────────────────────

    def _render_banner(self):
        banner_text = Text(BANNER, style="bold cyan")
        sub_text = Text(SUB_DESCRIPTION, style="italic bright_white")

        console.print()
        console.print(Align.center(banner_text))
        console.print(Align.center(sub_text))
        console.print()

    @property
    def current_thread(self) -> Optional[Thread]:
        if not self.controller or not self.controller.current_thread_id:
            return None
        return self.store.threads.get(self.controller.current_thread_id)

    def _remember_thread(self):
        self.settings["thread_id"] = self.controller.current_thread_id
        save_settings(self.settings)

    # ── Setup ─────────────────────────────────────────────────────────────

    async def setup(self):
        """Open the local cache, connect to the API and restore the last thread."""
        self._render_banner()

        console.print(Rule("[bold cyan]Setup[/]", style="cyan"))
        console.print()

        # 1. Local cache
        with console.status("[cyan]Loading local cache...[/]", spinner="dots"):
            self.db = SnapshotDatabase(db_path=self.config.db_path)
            self.store = ChatStore(storage=self.db)
            restored = await self.store.hydrate()
        if restored:
            console.print(
                f"  [green]✓[/] Cache loaded ({len(self.store.threads)} threads)"
            )
        else:
            console.print("  [green]✓[/] Cache initialized")

        # 2. Controller
        self.api = ApiClient.from_config(self.config)
        preloader = Preloader(self.store, self.api, limit=self.config.preload_count)
        self.controller = SessionController(
            self.store,
            self.api,
            self.api,
            preloader=preloader,
            on_delta=self._on_delta,
        )

        # 3. Thread list
        with console.status("[cyan]Syncing threads...[/]", spinner="dots"):
            last_thread_id = self.settings.get("thread_id")
            if last_thread_id and last_thread_id in self.store.threads:
                self.controller.current_thread_id = last_thread_id
            refreshed = await self.controller.refresh_threads()
        if refreshed:
            console.print("  [green]✓[/] Threads synced")
        elif self.store.threads.is_stale():
            console.print(
                f"  [yellow]⚠[/] Could not reach [cyan]{self.config.api_url}[/]; "
                "showing cached threads"
            )
        else:
            console.print("  [green]✓[/] Threads up to date")

        await asyncio.sleep(0.3)  # Brief pause to let the user see the setup results
        self._render_post_setup_screen()
        await self._render_existing_messages()

    async def shutdown(self):
        if self.controller:
            await self.controller.drain()
        if self.api:
            await self.api.aclose()
        if self.db:
            await self.db.close()

    # ── Rendering ─────────────────────────────────────────────────────────

    def _show_commands_help(self):
        """Display commands and keyboard shortcuts side by side."""
        console.print(Rule("[bold cyan]Available Commands & Shortcuts[/]", style="cyan"))

        table = Table(show_header=False, box=None, padding=(0, 2), expand=True)
        table.add_column("cmd", style="bold cyan", width=16)
        table.add_column("cmd_desc", style="white")
        table.add_column("shortcut_key", style="bold yellow", width=14)
        table.add_column("shortcut_desc", style="white")

        cmd_items = list(COMMANDS_HELP.items())
        shortcut_items = list(KEYBOARD_SHORTCUTS.items())
        for i in range(max(len(cmd_items), len(shortcut_items))):
            row = []
            if i < len(cmd_items):
                row.extend([f"  {cmd_items[i][0]}", cmd_items[i][1]])
            else:
                row.extend(["", ""])
            if i < len(shortcut_items):
                row.extend([f"  {shortcut_items[i][0]}", shortcut_items[i][1]])
            else:
                row.extend(["", ""])
            table.add_row(*row)

        console.print(table)

    def _render_post_setup_screen(self):
        """Clear terminal and render the main screen."""
        if os.name == "nt":
            os.system("cls")
        else:
            # \033[H: move to home, \033[2J: clear screen, \033[3J: clear scrollback
            sys.stdout.write("\033[H\033[2J\033[3J")
            sys.stdout.flush()

        self._render_banner()

        thread = self.current_thread
        info_text = Text()
        info_text.append("Server: ", style="bold cyan")
        info_text.append(self.config.api_url, style="white")
        info_text.append("  ||  ", style="dim")
        info_text.append("Selected Thread: ", style="bold cyan")
        if thread:
            info_text.append(f"{thread.title} ", style="white")
            info_text.append(f"({thread.id[:8]}...)", style="dim")
        else:
            info_text.append("New conversation", style="white")

        console.print(Align.center(info_text))
        console.print()

        self._show_commands_help()
        console.print(Rule(style="dim cyan"))
        console.print()

    @staticmethod
    def _render_user_message(content: str):
        console.print(
            Panel(
                content,
                title=" [bold bright_green]You[/] ",
                title_align="left",
                border_style="bright_green",
                padding=(0, 1),
                box=box.ROUNDED,
            )
        )
        console.print()

    @staticmethod
    def _render_assistant_message(content: str):
        if content == SEND_ERROR_MESSAGE:
            console.print(f"  [bold red]✗[/] [red]{content}[/]")
            console.print()
        elif content.strip():
            console.print(Markdown(content))
            console.print()

    def _render_messages(self, messages: List[ChatMessage]):
        for msg in messages:
            if msg.role == "user":
                self._render_user_message(msg.content)
            else:
                self._render_assistant_message(msg.content)

    async def _render_existing_messages(self):
        """Render the cached (or freshly fetched) history of the current thread."""
        thread_id = self.controller.current_thread_id
        if not thread_id:
            return
        messages = await self.controller.switch_thread(thread_id)
        if not messages:
            return

        console.print(Rule("[dim]Conversation History[/]", style="dim cyan"))
        self._render_messages(messages)
        console.print(Rule(style="dim cyan"))
        console.print()

    def _render_threads_table(self, threads: List[Thread], title: Optional[str] = None) -> Table:
        table = Table(
            title=title,
            box=box.ROUNDED,
            title_style="bold cyan",
            header_style="bold bright_white",
            border_style="dim cyan",
            padding=(0, 1),
        )
        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Title", style="white")
        table.add_column("ID", style="dim")
        table.add_column("Updated", style="dim cyan")

        current_id = self.controller.current_thread_id
        for i, t in enumerate(threads, 1):
            marker = " [bold green]*[/]" if t.id == current_id else ""
            cached = "" if self.store.messages.has(t.id) else " [dim](not cached)[/]"
            table.add_row(
                str(i),
                t.title + marker + cached,
                t.id[:8] + "...",
                t.updated_at.astimezone().strftime("%Y-%m-%d %H:%M"),
            )
        return table

    # ── Streaming ─────────────────────────────────────────────────────────

    def _on_delta(self, thread_id: str, message_id: str, content: str):
        """Typewrite the part of the reply that has not been printed yet."""
        printed = self._printed.get(message_id, 0)
        if printed == 0:
            if self._status is not None:
                self._status.stop()
            console.print()
        sys.stdout.write(content[printed:])
        sys.stdout.flush()
        self._printed[message_id] = len(content)

    async def _send(self, user_input: str):
        handle = self.controller.start_send(user_input)
        if handle is None:
            console.print("  [yellow]A reply is still streaming.[/]")
            return

        loop = asyncio.get_running_loop()

        def _stop_stream():
            self.controller.stop()

        try:
            loop.add_signal_handler(signal.SIGINT, _stop_stream)
        except NotImplementedError:
            pass  # Windows doesn't support signal handlers in asyncio

        try:
            with console.status("[bold cyan]Thinking...[/]", spinner="dots") as status:
                self._status = status
                result = await handle
        finally:
            self._status = None
            try:
                loop.remove_signal_handler(signal.SIGINT)
            except NotImplementedError:
                pass

        if result.assistant_message_id in self._printed:
            sys.stdout.write("\n")
            sys.stdout.flush()
        self._printed.clear()

        if result.outcome is SendOutcome.COMPLETED:
            if result.is_new_thread:
                self._remember_thread()
                thread = self.current_thread
                if thread:
                    console.print(f"\n  [dim]Thread titled:[/] [bold cyan]{thread.title}[/]")
        elif result.outcome is SendOutcome.CANCELLED:
            self._last_ctrl_c_time = time.monotonic()
            console.print("\n  [yellow]Interrupted.[/]")
            if result.is_new_thread:
                self._remember_thread()
        else:
            if result.is_new_thread:
                console.print(
                    f"\n  [bold red]✗[/] Could not start the conversation: {result.error}"
                )
            else:
                console.print()
                self._render_assistant_message(SEND_ERROR_MESSAGE)

    # ── Thread Management ─────────────────────────────────────────────────

    async def _cmd_new_thread(self):
        """Start a new conversation; it is created when the first message is sent."""
        self.controller.new_thread()
        self._remember_thread()
        self._render_post_setup_screen()
        console.print("  [green]✓[/] New conversation started")
        console.print()

    async def _pick_thread(self, title: str, prompt: str) -> Optional[Thread]:
        threads = self.store.threads.list_cached()
        if not threads:
            console.print("  [yellow]No threads available.[/]")
            return None
        console.print(self._render_threads_table(threads, title=title))
        choice = Prompt.ask(prompt, console=console)
        try:
            idx = int(choice) - 1
        except ValueError:
            console.print("  [yellow]Invalid input.[/]")
            return None
        if not 0 <= idx < len(threads):
            console.print("  [yellow]Invalid selection.[/]")
            return None
        return threads[idx]

    async def _cmd_switch_thread(self):
        """Switch to a different thread."""
        target = await self._pick_thread("Threads", "  Select thread number")
        if target is None:
            return
        self.controller.current_thread_id = target.id
        self._remember_thread()
        self._render_post_setup_screen()
        console.print(f"  [green]✓[/] Switched to: [bold]{target.title}[/]")
        console.print()
        await self._render_existing_messages()

    async def _cmd_delete_thread(self):
        """Delete a thread."""
        target = await self._pick_thread(None, "  Select thread number to delete")
        if target is None:
            return
        if not Confirm.ask(
            f"  Delete [bold red]{target.title}[/]?", default=False, console=console
        ):
            return
        was_current = target.id == self.controller.current_thread_id
        if not await self.controller.delete_thread(target.id):
            console.print("  [bold red]✗[/] The server refused to delete this thread.")
            return
        console.print(f"  [red]✗[/] Deleted: {target.title}")
        if was_current:
            self._remember_thread()
            self._render_post_setup_screen()
            console.print("  [green]✓[/] New conversation started")
            console.print()

    def _cmd_list_threads(self):
        """List cached threads."""
        threads = self.store.threads.list_cached()
        if not threads:
            console.print("  [yellow]No threads.[/]")
            return
        console.print(self._render_threads_table(threads, title="All Threads"))

    async def _cmd_refresh(self):
        with console.status("[cyan]Refreshing threads...[/]", spinner="dots"):
            refreshed = await self.controller.refresh_threads(force=True)
        if refreshed:
            console.print(f"  [green]✓[/] {len(self.store.threads)} threads")
            if self.controller.current_thread_id is None:
                self._remember_thread()
        else:
            console.print("  [yellow]⚠[/] Could not refresh threads; see the log.")

    # ── Main Loop ─────────────────────────────────────────────────────────

    async def run(self):
        """Main chat loop."""
        await self.setup()
        try:
            await self._loop()
        finally:
            await self.shutdown()

    async def _loop(self):
        while True:
            try:
                user_input = await self.session.prompt_async(
                    HTML("<ansibrightgreen><b>You > </b></ansibrightgreen>"),
                )
                user_input = user_input.strip()
                self._last_ctrl_c_time = 0.0  # Reset on successful input
            except EOFError:
                console.print("\n  [dim]Goodbye![/]")
                break
            except KeyboardInterrupt:
                now = time.monotonic()
                if now - self._last_ctrl_c_time < self._DOUBLE_CTRL_C_THRESHOLD:
                    # Double Ctrl+C → terminate
                    console.print("\n  [dim]Goodbye![/]")
                    break
                self._last_ctrl_c_time = now
                console.print("\n  [dim]Press Ctrl+C again to exit.[/]")
                continue

            if not user_input:
                continue

            # ── Handle commands ──
            if user_input.startswith("/"):
                cmd = user_input.split()[0].lower()

                if cmd == "/exit":
                    console.print("  [dim]Goodbye![/]")
                    break
                elif cmd == "/help":
                    self._show_commands_help()
                elif cmd == "/new-thread":
                    await self._cmd_new_thread()
                elif cmd == "/switch-thread":
                    await self._cmd_switch_thread()
                elif cmd == "/delete-thread":
                    await self._cmd_delete_thread()
                elif cmd == "/threads":
                    self._cmd_list_threads()
                elif cmd == "/refresh":
                    await self._cmd_refresh()
                else:
                    console.print(
                        f"[yellow]Unknown command: {cmd}[/]. Type /help for available commands."
                    )

                console.print()
                continue

            # ── Send message ──
            await self._send(user_input)
            console.print()


# ──────────────────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────────────────


def main():
    """Entry point for the Threadline CLI."""
    parser = argparse.ArgumentParser(
        description="Threadline - chat with your agent from the terminal"
    )
    parser.add_argument("--api-url", help="Base URL of the chat API")
    parser.add_argument("--log-level", help="Log level for threadline.log")
    args = parser.parse_args()

    load_all_dotenv()
    try:
        config = load_config(api_url=args.api_url, log_level=args.log_level)
    except ValueError as e:
        console.print(f"[bold red]Configuration error:[/] {e}")
        sys.exit(2)

    configure_logging(config.log_level)

    cli = ChatCLI(config)
    try:
        asyncio.run(cli.run())
    except KeyboardInterrupt:
        console.print("\n[dim]Exiting Threadline...[/]")


if __name__ == "__main__":
    main()
