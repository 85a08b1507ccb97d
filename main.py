#!/usr/bin/env python3
"""main.py

Interactive terminal chat on top of chatkeeper.
Streams replies with the Rich library and exposes the conversation
lifecycle (setup, history, delete) as slash commands.
"""

from __future__ import annotations

# Standard Library
import asyncio
import logging
import sys
from contextlib import aclosing
from uuid import UUID

# Third-Party Libraries
from dotenv import load_dotenv
from pydantic import ValidationError
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table
from rich.theme import Theme

# Local Modules
from chatkeeper.chat import ChatClient
from chatkeeper.exceptions import ChatKeeperError
from chatkeeper.settings import ChatKeeperSettings

# Load environment variables from .env file
load_dotenv()

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

custom_theme = Theme(
    {
        "info": "cyan",
        "warning": "yellow",
        "error": "bold red",
        "success": "bold green",
        "user": "bold blue",
        "assistant": "green",
        "system": "magenta",
    }
)
console = Console(theme=custom_theme)


def display_help() -> None:
    """Display available commands and usage information."""
    help_text = """
**Available Commands:**

- `/help` - Show this help message
- `/setup <prompt>` - Start a new conversation with a system message
- `/new` - Start a new conversation without a system message
- `/history` - Show the messages retained for this conversation
- `/clear` - Delete the current conversation
- `/stats` - Show current settings and conversation statistics
- `/quit` or `/exit` - Exit
- Any other text - Chat with the assistant
    """
    console.print(Panel(Markdown(help_text), title="Help", border_style="cyan"))


def display_history(client: ChatClient, conversation_id: UUID | None) -> None:
    """Print the retained messages of the current conversation.

    Args:
        client: The ChatClient instance.
        conversation_id: Current conversation, if one has started.
    """
    messages = client.get_conversation(conversation_id) if conversation_id else []
    if not messages:
        console.print("No messages retained for this conversation.\n", style="info")
        return

    table = Table(title=f"Conversation {conversation_id}", show_lines=True)
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Role")
    table.add_column("Content")
    for message in messages:
        role = message.role.value
        table.add_row(message.timestamp.strftime("%H:%M:%S"), f"[{role}]{role}[/{role}]", message.content)
    console.print(table)


def display_stats(client: ChatClient, conversation_id: UUID | None) -> None:
    """Display current configuration and conversation statistics.

    Args:
        client: The ChatClient instance.
        conversation_id: Current conversation, if one has started.
    """
    retained = len(client.get_conversation(conversation_id)) if conversation_id else 0
    settings = client.settings

    stats_text = f"""
**Conversation Statistics:**

- Conversation: `{conversation_id or "not started"}`
- Messages retained: {retained}/{settings.message_limit}
- Live conversations: {len(client.cache)}
- Model: `{settings.default_model}`
- Host: `{settings.host}`
- Expiration: {settings.message_expiration}
    """
    console.print(Panel(Markdown(stats_text), title="Statistics", border_style="cyan"))


async def stream_reply(client: ChatClient, conversation_id: UUID | None, text: str) -> UUID:
    """Ask ``text`` and render the reply progressively.

    Returns:
        The conversation id the turn belongs to.
    """
    reply = ""
    responses = client.ask_stream(text, conversation_id)
    async with aclosing(responses):
        with Live(console=console, refresh_per_second=12) as live:
            async for partial in responses:
                conversation_id = partial.conversation_id
                if not partial.is_successful:
                    live.update(
                        Panel(partial.error.message, title="[bold red]Error[/bold red]", border_style="red")
                    )
                    break
                reply += partial.content
                live.update(
                    Panel(Markdown(reply), title="[bold green]Assistant[/bold green]", border_style="green")
                )
    return conversation_id


async def run() -> int:
    """Run the interactive chat loop until the user quits."""
    try:
        settings = ChatKeeperSettings()
    except ValidationError as exc:
        console.print(f"❌ Invalid configuration: {exc}", style="error")
        return 1

    console.print(f"📍 Host: {settings.host}", style="info")
    console.print(f"🤖 Model: {settings.default_model}", style="info")
    console.print(f"💾 Message limit: {settings.message_limit}\n", style="info")
    console.print("Type [bold]/help[/bold] for commands, or start chatting!\n", style="info")

    conversation_id: UUID | None = None

    async with ChatClient.from_settings(settings) as client:
        while True:
            try:
                user_input = Prompt.ask("[bold blue]You[/bold blue]").strip()
                if not user_input:
                    continue

                command, _, argument = user_input.partition(" ")
                command = command.lower()

                if command in ("/quit", "/exit"):
                    console.print("\n👋 Goodbye!\n", style="success")
                    return 0
                elif command == "/help":
                    display_help()
                elif command == "/setup":
                    conversation_id = await client.setup(argument, conversation_id)
                    console.print(f"🧭 Conversation {conversation_id} set up.\n", style="success")
                elif command == "/new":
                    conversation_id = None
                    console.print("🆕 The next message starts a new conversation.\n", style="success")
                elif command == "/history":
                    display_history(client, conversation_id)
                elif command == "/clear":
                    if conversation_id is not None:
                        await client.delete_conversation(conversation_id)
                    conversation_id = None
                    console.print("🗑️  Conversation deleted.\n", style="success")
                elif command == "/stats":
                    display_stats(client, conversation_id)
                else:
                    console.print()
                    conversation_id = await stream_reply(client, conversation_id, user_input)
                    console.print()

            except (KeyboardInterrupt, EOFError):
                console.print("\n\n👋 Interrupted. Goodbye!\n", style="warning")
                return 0

            except ChatKeeperError as exc:
                console.print(f"\n❌ Error: {exc}\n", style="error")
                console.print("You can continue chatting or type /quit to exit.\n", style="info")


def main() -> None:
    """Main entry point for the chatkeeper CLI."""
    try:
        code = asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n\n👋 Interrupted. Goodbye!\n", style="warning")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
