from typing import List, Optional

from rich.markup import escape

from .clipboard import copy_to_clipboard
from .session import ChatSession

Notes = List[str]


def handle_command(line: str, chat: ChatSession, notes: Notes) -> Optional[str]:
    """Handles slash commands. Output lines go to `notes`; returns "exit" to quit."""
    cmd, _, args = line[1:].partition(' ')
    cmd = cmd.lower()

    if cmd in ("exit", "quit"):
        return "exit"

    elif cmd == "help":
        help_text = {
            "/help": "Show this help message.",
            "/who": "List users currently in the room.",
            "/invite": "Copy an invite link (the password is not included).",
            "/clear confirm": "Delete the room history for everyone.",
            "/dismiss": "Hide the current notice.",
            "/exit": "Leave the room and quit.",
        }
        notes.append("[bold]=== In-Chat Commands ===[/]")
        for c, d in help_text.items():
            notes.append(f"[bold cyan]{c}[/]: {d}")

    elif cmd == "who":
        users = chat.members
        notes.append(f"[bold]=== ONLINE ({len(users)}) ===[/]")
        for u in users:
            if u == chat.state.name:
                notes.append(f"[bold green]{escape(u)} (You)[/]")
            else:
                notes.append(f"[cyan]● {escape(u)}[/]")

    elif cmd == "invite":
        link = chat.invite_link()
        if copy_to_clipboard(link):
            notes.append(f"Invite link copied: [bold]{escape(link)}[/]")
        else:
            notes.append(f"Invite link: [bold]{escape(link)}[/]")
        notes.append("[dim]Share the room password separately.[/dim]")

    elif cmd == "clear":
        if args.strip().lower() != "confirm":
            notes.append(f"[yellow]This deletes every message of room '{escape(chat.state.room)}' for everyone.[/]")
            notes.append("Type [bold]/clear confirm[/] to proceed.")
        else:
            chat.clear_history()

    elif cmd == "dismiss":
        chat.dismiss()

    else:
        notes.append(f"[red]Unknown command: /{escape(cmd)}[/]")

    return None
