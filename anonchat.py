#!/usr/bin/env python3
"""anonchat – anonymous end-to-end encrypted room chat
"""
import argparse
import logging
import signal
import sys
from getpass import getpass

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Prompt
from rich.text import Text

from anonchat_lib import config, constants, ui
from anonchat_lib.constants import VERSION
from anonchat_lib.rooms import canonical_name, canonical_room, room_from_link
from anonchat_lib.session import ChatSession
from anonchat_lib.supabase import SupabaseRelay

console = Console()


def setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _render_header(title: str):
    """Renders a standardized header panel."""
    console.clear()
    header_text = Text("anonchat", style="bold cyan", justify="center")
    panel = Panel(
        header_text,
        title=f"v{VERSION}",
        subtitle=f"[bold blue]{title}[/]",
        border_style="blue"
    )
    console.print(panel)
    console.print()


def first_run(args):
    """Asks for room, nickname and server when nothing is saved."""
    _render_header("First-Time Setup")

    console.print(Panel(
        Text.from_markup(
            "Welcome to [bold cyan]anonchat[/]!\n\n"
            "A [bold]Room[/] is a shared chat space; anyone with its id can see it exists.\n"
            "The [bold]Password[/] is what keeps it private. It is never saved or sent."
        ),
        title="Welcome",
        border_style="green",
        padding=(1, 2)
    ))

    room = Prompt.ask("🏠 Room ID")
    nick = Prompt.ask("👤 Nickname")
    server = args.server or Prompt.ask("🌍 Supabase project URL")
    api_key = args.key or Prompt.ask("🔑 Supabase anon key")

    if Prompt.ask("\n💾 Save these settings for next time?", choices=["y", "n"], default="y") == "y":
        config.save_conf(canonical_room(room), canonical_name(nick), server, api_key)
        console.print("[green]Settings saved.[/]")

    return room, nick, server, api_key


def start_chat(room: str, nick: str, server: str, api_key: str) -> int:
    """Joins the room and runs the chat UI until the user exits."""
    password = getpass(f"🔐 Password for room '{canonical_room(room)}' (will be hidden): ")

    relay = SupabaseRelay(server, api_key)
    chat = ChatSession(relay)

    def quit_clean(*_):
        chat.leave()
        relay.close()
        console.print("\n[yellow]Exiting...[/]")
        sys.exit(0)

    signal.signal(signal.SIGINT, quit_clean)
    signal.signal(signal.SIGTERM, quit_clean)

    with console.status(f"Joining '{canonical_room(room)}'..."):
        joined = chat.join(room, nick, password)
    if not joined:
        console.print(f"[bold red]✗ {chat.state.error or 'Could not join the room.'}[/]")
        relay.close()
        return 1

    try:
        ui.ChatUI(chat).run()
    finally:
        chat.leave()
        relay.close()
    return 0


def _server_settings(args, saved_server, saved_key):
    server = args.server or saved_server
    api_key = args.key or saved_key
    if not server:
        server = Prompt.ask("🌍 Supabase project URL")
    if not api_key:
        api_key = Prompt.ask("🔑 Supabase anon key")
    return server.rstrip('/'), api_key


def join_room(args) -> int:
    """Handler for the 'join' command; ROOM may also be an invite link."""
    _render_header("Join Room")
    room = room_from_link(args.room) if "://" in args.room else args.room
    _, saved_nick, saved_server, saved_key = config.load_conf()
    nick = args.name or saved_nick or Prompt.ask("👤 Your Nickname")
    server, api_key = _server_settings(args, saved_server, saved_key)

    if Prompt.ask("\n💾 Save these room settings for next time?", choices=["y", "n"], default="n") == 'y':
        config.save_conf(canonical_room(room), canonical_name(nick), server, api_key)
        console.print("[green]Settings saved.[/]")

    console.print(f"\n[green]Joining room '{canonical_room(room)}' as '{canonical_name(nick)}'...[/]")
    return start_chat(room, nick, server, api_key)


def main() -> int:
    """Main entry point: parses arguments and starts the correct action."""
    parser = argparse.ArgumentParser(
        description="anonchat – anonymous end-to-end encrypted room chat.",
        formatter_class=argparse.RawTextHelpFormatter
    )

    parser.add_argument('--server', help='Supabase project URL to override saved/default.')
    parser.add_argument('--key', help='Supabase anon key to override saved/default.')
    parser.add_argument('--verbose', '-v', action='store_true', help='Show debug logging.')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('run', help='Run anonchat with saved settings (default action)')

    join_parser = subparsers.add_parser('join', help='Join a room by id or invite link.')
    join_parser.add_argument('room', help='Room id or invite link.')
    join_parser.add_argument('--name', '-n', help='Your display name.')

    subparsers.add_parser('reset', help='Delete saved settings.')
    subparsers.add_parser('version', help='Show version info.')

    # If no command is given, default to 'run'
    args = parser.parse_args(sys.argv[1:] if sys.argv[1:] else ['run'])
    setup_logging(args.verbose)

    if args.command == 'version':
        console.print(f"[cyan]anonchat v{VERSION}[/]")
        return 0

    if args.command == 'reset':
        if config.reset_conf():
            console.print(f"[green]Removed {constants.CONF_FILE}.[/]")
        else:
            console.print("[dim]Nothing to reset.[/]")
        return 0

    if args.command == 'join':
        return join_room(args)

    # Default action: run with config or do first-time setup
    room, nick, server, api_key = config.load_conf()
    server = args.server or server
    api_key = args.key or api_key

    if not all((room, nick, server, api_key)):
        room, nick, server, api_key = first_run(args)

    return start_chat(room, nick, server.rstrip('/'), api_key)


if __name__ == "__main__":
    try:
        sys.exit(main())
    except (KeyboardInterrupt, EOFError):
        console.print("\n[yellow]Exited gracefully.[/]")
        sys.exit(0)
