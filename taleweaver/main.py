"""
Taleweaver CLI Application.

A text RPG driven by a local or hosted LLM, with plugins that can add
backends and replace the game rules.

Commands:
    play     - Play the game (setup phases, then the story)
    plugins  - List plugins and their status
    select   - Choose the plugin that provides the game rules
    status   - Display the game dashboard
    reset    - Start a new game, keeping connection and plugin settings
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.status import Status
from rich.table import Table

from taleweaver.core.errors import TaleweaverError
from taleweaver.core.rules import RuleLogicDispatcher
from taleweaver.core.state import Gender, GameState, View
from taleweaver.core.store import GameStateStore
from taleweaver.plugins.context import (
    CapabilityBundle, LibraryAccess, UIFeedback, UIRegistry, create_capabilities,
)
from taleweaver.plugins.registry import LoadReport, PluginRegistry
from taleweaver.services.engine import GameEngine

load_dotenv()

# Initialize Rich console
console = Console()

# Initialize Typer app
app = typer.Typer(
    name="taleweaver",
    help="LLM-driven text RPG with rule and backend plugins",
    add_completion=False,
)

DEFAULT_STATE_FILE = "taleweaver_state.json"
DEFAULT_PLUGIN_DIR = "plugins"


def get_paths(state_file: Optional[Path] = None, plugin_dir: Optional[Path] = None) -> tuple[Path, Path]:
    """Resolve the state file and plugin directory from options or environment."""
    state_path = state_file or Path(os.getenv("TALEWEAVER_STATE_FILE", DEFAULT_STATE_FILE))
    plugin_path = plugin_dir or Path(os.getenv("TALEWEAVER_PLUGIN_DIR", DEFAULT_PLUGIN_DIR))
    return state_path, plugin_path


def configure_logging(verbose: bool = False) -> None:
    level = "DEBUG" if verbose else os.getenv("TALEWEAVER_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def apply_env_connection(state: GameState) -> None:
    """Environment settings override the connection saved in the state."""
    if os.getenv("LLM_BASE_URL"):
        state.api_url = os.environ["LLM_BASE_URL"]
    if os.getenv("LLM_API_KEY"):
        state.api_key = os.environ["LLM_API_KEY"]
    if os.getenv("LLM_MODEL"):
        state.model = os.environ["LLM_MODEL"]


class RichUIFeedback(UIFeedback):
    """UI feedback rendered on the console; progress goes to a live status line."""

    def __init__(self, console: Console) -> None:
        self.console = console
        self.status: Optional[Status] = None

    def update_progress(self, title: str, message: str = "", token_count: int = 0) -> None:
        text = f"[bold green]{title}...[/]"
        if token_count:
            text += f" [dim]({token_count} tokens)[/]"
        elif message:
            text += f" [dim]{message}[/]"
        if self.status is not None:
            self.status.update(text)

    def show_error(self, title: str, message: str) -> None:
        self.console.print(Panel(message, title=f"[bold red]{title}[/]", border_style="red"))

    def log(self, message: str) -> None:
        self.console.print(f"[dim]{message}[/]")


class Session:
    """Everything one CLI invocation needs, wired together."""

    def __init__(self, state_path: Path, plugin_dir: Path) -> None:
        self.state_path = state_path
        state = GameState.load(state_path)
        apply_env_connection(state)

        self.store = GameStateStore(state)
        self.ui = RichUIFeedback(console)
        self.ui_registry = UIRegistry()
        self.capabilities: CapabilityBundle = create_capabilities(
            self.store, ui=self.ui, library=LibraryAccess(console=console),
        )
        self.registry = PluginRegistry(self.store, self.capabilities, plugin_dir, self.ui_registry)
        self.dispatcher = RuleLogicDispatcher(self.store)
        self.engine = GameEngine(self.store, self.dispatcher, self.capabilities.backend, self.ui)

    async def load_plugins(self) -> LoadReport:
        return await self.registry.load_all()

    def save(self) -> None:
        self.store.save(self.state_path)


# =============================================================================
# Rendering
# =============================================================================

def create_dashboard(state: GameState) -> Panel:
    """Create a rich dashboard panel showing game stats."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Label", style="dim")
    table.add_column("Value", style="bold cyan")

    table.add_row("Phase", state.view.value)
    table.add_row("Backend", f"{state.active_backend} ({state.model or 'no model set'} @ {state.api_url})")
    table.add_row("World", state.world.name)
    table.add_row("Protagonist", f"{state.protagonist.name} ({state.protagonist.race})")
    location = state.current_location
    table.add_row("Location", location.name if location else "[dim]None[/]")
    table.add_row("Characters", str(len(state.characters)))
    table.add_row("Events", str(len(state.events)))

    selected = next((p.name for p in state.plugins if p.selected_plugin), None)
    table.add_row("Rules", selected or "default")
    if state.is_combat:
        table.add_row("Combat", "[bold red]yes[/]")

    return Panel(table, title="[bold magenta]Taleweaver[/]", border_style="magenta")


def show_plugins(state: GameState) -> None:
    """Display a table of all plugin records."""
    if not state.plugins:
        console.print("[dim]No plugins found.[/]")
        return

    table = Table(title="Plugins", show_header=True, header_style="bold cyan")
    table.add_column("Name", style="bold")
    table.add_column("Enabled")
    table.add_column("Rules")
    table.add_column("Status")

    for wrapper in state.plugins:
        if wrapper.load_error:
            status = f"[red]{wrapper.load_error}[/]"
        elif wrapper.functional:
            status = "[green]loaded[/]"
        else:
            status = "[dim]not loaded[/]"
        table.add_row(
            wrapper.name,
            "yes" if wrapper.enabled else "no",
            "[bold]selected[/]" if wrapper.selected_plugin else "",
            status,
        )

    console.print(table)


def show_ui_fragments(session: Session, kind: str) -> None:
    state = session.store.get_snapshot()
    for fragment in session.ui_registry.unique(kind):
        console.print(Panel(fragment.render(state), title=fragment.label, border_style="blue"))


def show_events(state: GameState, start: int) -> None:
    """Print the events added since index `start`."""
    for event in state.events[start:]:
        if event.type == "narration" and event.text:
            console.print()
            console.print(Markdown(event.text))
        elif event.type == "location_change":
            location = state.locations[event.location_index]
            console.print()
            console.print(Panel(location.description, title=f"[bold]{location.name}[/]", border_style="cyan"))
        elif event.type == "character_introduction":
            character = state.characters[event.character_index]
            console.print(f"[dim]Introduced: [bold]{character.name}[/] ({character.race})[/]")
        elif event.type == "check":
            color = "green" if event.success else "red" if event.success is False else "yellow"
            console.print(f"[{color}]{event.statement}[/]")
        elif event.type == "action":
            console.print(f"\n[bold cyan]> {event.action}[/]")


def show_help() -> None:
    """Display help for in-game commands."""
    console.print(Panel(
        "[bold]1-3[/]        Choose a suggested action\n"
        "[bold]text[/]       Do something else\n"
        "[bold]/status[/]    Show the dashboard\n"
        "[bold]/save[/]      Save the game\n"
        "[bold]/quit[/]      Save and exit\n"
        "\n[dim]Press Ctrl+C while the story is generating to cancel that step.[/]",
        title="[bold cyan]Commands[/]",
        border_style="cyan",
    ))


# =============================================================================
# Game loop
# =============================================================================

async def run_step(session: Session, action: Optional[str] = None) -> bool:
    """Advance one step with a live status line. Returns False if it failed."""
    loop = asyncio.get_running_loop()
    engine = session.engine
    try:
        loop.add_signal_handler(signal.SIGINT, engine.abort)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    try:
        with console.status("[bold green]Working...") as status:
            session.ui.status = status
            await engine.advance(action)
        return True
    except TaleweaverError as e:
        if engine.is_abort_error(e):
            console.print("[yellow]Cancelled.[/]")
        return False
    except ValueError:
        # Invalid generated data; already reported through UI feedback
        return False
    finally:
        session.ui.status = None
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)


async def setup_character(session: Session) -> None:
    """Ask for the protagonist's gender, race and class before generation."""
    rules = session.dispatcher.get_active()
    races = [race.name for race in (await rules.get_available_races()).value]
    classes = [c.name for c in (await rules.get_available_classes()).value]

    show_ui_fragments(session, "character")

    gender = Prompt.ask("Gender", choices=[g.value for g in Gender], default=Gender.MALE.value)
    if races:
        race = Prompt.ask("Race", choices=races, default=races[0])
    else:
        race = Prompt.ask("Race", default="human")
    character_class = Prompt.ask("Class", choices=classes, default=classes[0]) if classes else ""

    async def updater(draft: GameState) -> None:
        draft.protagonist.gender = Gender(gender)
        draft.protagonist.race = race
        draft.protagonist.character_class = character_class

    await session.store.mutate(updater)


async def setup_connection(session: Session) -> None:
    state = session.store.get_snapshot()
    console.print(f"Server: [cyan]{state.api_url}[/]  Model: [cyan]{state.model or '(server default)'}[/]")
    show_ui_fragments(session, "backend")
    if not Confirm.ask("Use these settings?", default=True):
        api_url = Prompt.ask("Server URL", default=state.api_url)
        model = Prompt.ask("Model", default=state.model)

        async def updater(draft: GameState) -> None:
            draft.api_url = api_url
            draft.model = model

        await session.store.mutate(updater)


async def play_setup(session: Session) -> bool:
    """Walk through the setup phases. Returns False if the player gave up."""
    while session.store.get_snapshot().view != View.CHAT:
        view = session.store.get_snapshot().view
        if view == View.WELCOME:
            console.print(Panel("Welcome to [bold]Taleweaver[/].", border_style="magenta"))
        elif view == View.CONNECTION:
            await setup_connection(session)
        elif view == View.CHARACTER:
            await setup_character(session)

        if not await run_step(session):
            if not Confirm.ask("Retry?", default=True):
                return False
        session.save()
    return True


async def play_loop(session: Session) -> None:
    state = session.store.get_snapshot()
    if not any(event.type == "narration" for event in state.events):
        shown = 0
        if await run_step(session):
            session.save()
    else:
        shown = max(0, len(state.events) - 3)

    show_events(session.store.get_snapshot(), shown)

    while True:
        state = session.store.get_snapshot()
        for number, suggestion in enumerate(state.actions, start=1):
            console.print(f"  [bold cyan]{number}.[/] {suggestion}")

        try:
            user_input = Prompt.ask("[bold cyan]>[/]").strip()
        except EOFError:
            break
        if not user_input:
            continue

        if user_input.startswith("/"):
            cmd = user_input[1:].split(maxsplit=1)[0].lower()
            if cmd in ("quit", "q", "exit"):
                break
            elif cmd == "help":
                show_help()
            elif cmd == "status":
                console.print(create_dashboard(state))
                show_ui_fragments(session, "character")
            elif cmd == "save":
                session.save()
                console.print("[green]Saved.[/]")
            else:
                console.print(f"[yellow]Unknown command: /{cmd}[/]")
            continue

        action = user_input
        if user_input.isdigit() and 1 <= int(user_input) <= len(state.actions):
            action = state.actions[int(user_input) - 1]

        before = len(state.events)
        if await run_step(session, action):
            show_events(session.store.get_snapshot(), before)
            session.save()


async def play_async(session: Session) -> None:
    await session.load_plugins()
    if await play_setup(session):
        await play_loop(session)


# =============================================================================
# Commands
# =============================================================================

StateOption = typer.Option(None, "--state", "-s", help="State file")
PluginDirOption = typer.Option(None, "--plugins", "-p", help="Plugin directory")


@app.command()
def play(
    state_file: Optional[Path] = StateOption,
    plugin_dir: Optional[Path] = PluginDirOption,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Play the game."""
    configure_logging(verbose)
    session = Session(*get_paths(state_file, plugin_dir))
    try:
        asyncio.run(play_async(session))
    except KeyboardInterrupt:
        pass
    finally:
        session.save()
        console.print("\n[green]Game saved. Goodbye![/]\n")


@app.command()
def plugins(
    state_file: Optional[Path] = StateOption,
    plugin_dir: Optional[Path] = PluginDirOption,
) -> None:
    """List plugins and whether they loaded."""
    configure_logging()
    session = Session(*get_paths(state_file, plugin_dir))
    report = asyncio.run(session.load_plugins())
    show_plugins(session.store.get_snapshot())
    if report.hook_failures:
        for failure in report.hook_failures:
            console.print(f"[yellow]{failure}[/]")
    session.save()


@app.command()
def select(
    name: str = typer.Argument(..., help="Plugin name"),
    off: bool = typer.Option(False, "--off", help="Deselect instead"),
    state_file: Optional[Path] = StateOption,
    plugin_dir: Optional[Path] = PluginDirOption,
) -> None:
    """Choose the plugin that provides the game rules."""
    configure_logging()
    session = Session(*get_paths(state_file, plugin_dir))

    async def run() -> None:
        await session.load_plugins()
        await session.capabilities.state.set_plugin_selected(name, not off)

    try:
        asyncio.run(run())
    except TaleweaverError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)

    session.save()
    show_plugins(session.store.get_snapshot())


@app.command()
def status(state_file: Optional[Path] = StateOption) -> None:
    """Display the game dashboard."""
    state_path, _ = get_paths(state_file)
    state = GameState.load(state_path)
    console.print()
    console.print(create_dashboard(state))


@app.command()
def reset(
    state_file: Optional[Path] = StateOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
) -> None:
    """Start a new game, keeping connection and plugin settings."""
    configure_logging()
    state_path, _ = get_paths(state_file)
    if not yes and not Confirm.ask("Discard the current game?", default=False):
        raise typer.Exit()

    store = GameStateStore.load(state_path)
    asyncio.run(store.reset())
    store.save(state_path)
    console.print("[green]Game reset.[/]")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
