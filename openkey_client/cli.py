#!/usr/bin/env python3
"""
Interactive console for the OpenKey client.

Provides a command-line interface for:
- Logging in against the chat service
- Background synchronization of conversations
- Plain and secret messaging, including file attachments
- Inspecting local secret-chat keys
"""

import asyncio
import getpass
import logging
import mimetypes
import os
import sys
from pathlib import Path
from typing import Callable, Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from .api import ApiError
from .config import ClientConfig
from .sender import OutgoingFile
from .service import ChatClient

HELP_TEXT = """Commands:
  /login <username> - Log in (prompts for password)
  /chats - List conversations
  /open <id> - Open a conversation (secret ones are secret_<userId>)
  /secret <userId> - Start a secret chat
  /file <path> - Send a file to the open conversation
  /read - Mark the open conversation as read
  /keys - Show local key information
  /close - Leave the open conversation
  /quit - Quit application"""


class Console:
    """
    Command dispatcher around a ChatClient.
    """

    def __init__(self, client: ChatClient, output: Callable[[str], None] = print,
                 ask_password: Callable[[str], str] = getpass.getpass):
        self.client = client
        self.output = output
        self.ask_password = ask_password
        self.current_chat: Optional[str] = None

    @property
    def prompt(self) -> str:
        return f"[{self.current_chat}] > " if self.current_chat else "> "

    async def handle_line(self, line: str) -> bool:
        """
        Handle one line of input.

        Returns:
            False when the console should exit
        """
        line = line.strip()
        if not line:
            return True
        if line.startswith("/"):
            return await self._handle_command(line)
        if self.current_chat is None:
            self.output("No open conversation. Use /open <id> first.")
            return True
        message = await self.client.send_message(self.current_chat, line)
        if message is None:
            self.output("Message was not sent.")
        return True

    async def _handle_command(self, command: str) -> bool:
        parts = command.split(maxsplit=1)
        cmd = parts[0].lower()
        arg = parts[1].strip() if len(parts) == 2 else ""

        if cmd == "/login" and arg:
            password = self.ask_password("Password: ")
            try:
                user = await self.client.login(arg, password)
            except ApiError as e:
                self.output(f"Login failed: {e}")
                return True
            self.output(f"Login successful! Welcome back, {user.display_name}")
            self.client.start_sync()
        elif cmd == "/chats":
            self._print_chats()
        elif cmd == "/open" and arg:
            self._open_chat(arg)
        elif cmd == "/secret" and arg:
            conversation = self.client.create_secret_chat(arg)
            if conversation is None:
                self.output(f"Unknown user {arg}")
            else:
                self.current_chat = conversation.id
                self.output(f"Secret chat with {conversation.counterpart.display_name}")
        elif cmd == "/file" and arg:
            await self._send_file(arg)
        elif cmd == "/read" and self.current_chat:
            await self.client.mark_chat_as_read(self.current_chat)
        elif cmd == "/keys":
            info = self.client.key_info()
            self.output(f"Policy: {info.policy}, current key: {info.current_key_id}, "
                        f"stored keys: {info.total_keys}")
        elif cmd == "/close":
            self.current_chat = None
        elif cmd == "/quit":
            return False
        elif cmd == "/help":
            self.output(HELP_TEXT)
        else:
            self.output("Unknown command. Type /help for help.")
        return True

    def _print_chats(self):
        if not self.client.conversations:
            self.output("No conversations yet.")
            return
        for conversation in self.client.conversations:
            lock = "🔒 " if conversation.secret else ""
            unread = f" ({conversation.unread_count})" if conversation.unread_count else ""
            self.output(f"  {conversation.id}: {lock}{conversation.counterpart.display_name}"
                        f"{unread} - {conversation.preview_text}")

    def _open_chat(self, conversation_id: str):
        conversation = self.client.get_chat(conversation_id)
        if conversation is None:
            self.output(f"No conversation {conversation_id}")
            return
        self.current_chat = conversation_id
        for message in conversation.messages[-20:]:
            prefix = "You" if message.mine else conversation.counterpart.display_name
            timestamp = message.timestamp.strftime("%H:%M")
            body = message.text or f"[{message.attachment_kind.value if message.attachment_kind else 'file'}]"
            self.output(f"[{timestamp}] {prefix}: {body}")

    async def _send_file(self, path: str):
        if self.current_chat is None:
            self.output("No open conversation. Use /open <id> first.")
            return
        file_path = Path(path).expanduser()
        if not file_path.is_file():
            self.output(f"No such file: {path}")
            return
        media_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
        outgoing = OutgoingFile(name=file_path.name, media_type=media_type, data=file_path.read_bytes())
        if await self.client.send_message(self.current_chat, file=outgoing) is None:
            self.output("File was not sent.")


async def run_interactive(console: Console):
    """Run interactive chat session"""
    session = PromptSession()
    console.output(HELP_TEXT)

    try:
        while True:
            try:
                with patch_stdout():
                    line = await session.prompt_async(console.prompt)
            except (KeyboardInterrupt, EOFError):
                break
            if not await console.handle_line(line):
                break
    finally:
        await console.client.close()


async def main():
    """Main entry point"""
    logging.basicConfig(
        level=os.environ.get("OPENKEY_LOG_LEVEL", "WARNING"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    client = ChatClient(ClientConfig.from_env())
    console = Console(client)

    print("=" * 50)
    print("OpenKey Secure Chat")
    print("=" * 50)

    if await client.resume():
        print(f"Welcome back, {client.session.current_user.display_name}")
        client.start_sync()

    await run_interactive(console)
    print("\nGoodbye!")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
