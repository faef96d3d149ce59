"""Command line entry point for the room chat client."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import getpass
import logging
import mimetypes
import os
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import TextIO

from .api import ChatAPI
from .config import SessionConfig, load_config, save_config
from .constants import DEFAULT_IMAGE_CONTENT_TYPE
from .credentials import TokenFileStore
from .errors import APIError, RoomChatError, SendFailure
from .events import ChatEvent, EventKind, ImageStatus, created_at_order
from .session import TERMINAL_STATES, RoomSession, SessionState
from .utils import get_timestamp, normalize_room_id, sanitize_display_name

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    log_level = os.environ.get("ROOMCHAT_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def format_time(event: ChatEvent) -> str:
    """Format an event's server time as HH:MM:SS, falling back to now."""
    if event.has_timestamp:
        rank, value = created_at_order(event.created_at)  # type: ignore[arg-type]
        if rank == 0 and isinstance(value, float):
            with contextlib.suppress(OverflowError, OSError, ValueError):
                return datetime.fromtimestamp(value / 1000.0).strftime("%H:%M:%S")
        return str(event.created_at)
    return get_timestamp()


def render_event(event: ChatEvent, image_status: ImageStatus = ImageStatus.NONE) -> str:
    """Render one timeline entry as a single terminal line.

    Args:
        event: Timeline entry
        image_status: Resolution state of the entry's image, if any

    Returns:
        Display line
    """
    when = format_time(event)
    if event.kind is EventKind.SYSTEM_NOTICE:
        return f"[{when}] * {event.content}"

    sender = sanitize_display_name(event.sender) or "?"
    if event.kind is EventKind.TEXT:
        return f"[{when}] <{sender}> {event.content}"

    if event.resolved_asset is not None:
        image = f"[image {event.resolved_asset.content_type}, {event.resolved_asset.size} bytes]"
    elif image_status is ImageStatus.PENDING:
        image = "[loading image]"
    else:
        image = "[image unavailable]"
    caption = f" {event.content}" if event.content else ""
    return f"[{when}] <{sender}> {image}{caption}"


class RoomConsole:
    """Terminal view of one room session."""

    def __init__(self, session: RoomSession, out: TextIO | None = None) -> None:
        self.session = session
        self.out = out or sys.stdout
        self.stop_event = asyncio.Event()
        self._lines: asyncio.Queue[str | None] = asyncio.Queue()

        session.on_event = self.show_event
        session.on_state = self.show_state
        session.on_error = self.show_error

    def write(self, line: str) -> None:
        print(line, file=self.out, flush=True)

    def show_event(self, event: ChatEvent) -> None:
        status = (
            self.session.image_status(event.sequence_key)
            if event.sequence_key is not None
            else ImageStatus.NONE
        )
        self.write(render_event(event, status))

    def show_state(self, state: SessionState, error: RoomChatError | None) -> None:
        if state is SessionState.STREAMING:
            self.write(f"-- joined room {self.session.room_id} (/quit to leave, /image PATH [caption])")
        if state in TERMINAL_STATES:
            self.stop_event.set()

    def show_error(self, error: RoomChatError) -> None:
        self.write(f"! {error}")

    def _start_reader(self, stream: TextIO) -> None:
        loop = asyncio.get_running_loop()

        def _push(line: str | None) -> None:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(self._lines.put_nowait, line)

        def _reader() -> None:
            for line in stream:
                _push(line)
            _push(None)

        threading.Thread(target=_reader, name="roomchat-stdin", daemon=True).start()

    async def handle_line(self, line: str) -> bool:
        """Act on one input line.

        Returns:
            False when the user asked to leave
        """
        text = line.rstrip("\r\n")
        if not text.strip():
            return True

        command = text.strip().split(maxsplit=2)
        if command[0] == "/quit":
            return False
        if command[0] == "/history":
            for event in self.session.snapshot():
                self.show_event(event)
            return True

        try:
            if command[0] == "/image":
                if len(command) < 2:
                    self.write("! usage: /image PATH [caption]")
                    return True
                await self._send_image(command[1], command[2] if len(command) > 2 else "")
            else:
                await self.session.send_text(text)
        except (SendFailure, ValueError, OSError) as e:
            self.write(f"! not sent: {e}")
            self.write(f"! unsent: {text}")
        return True

    async def _send_image(self, path: str, caption: str) -> None:
        file_path = Path(path).expanduser()
        data = await asyncio.get_running_loop().run_in_executor(None, file_path.read_bytes)
        content_type = mimetypes.guess_type(file_path.name)[0] or DEFAULT_IMAGE_CONTENT_TYPE
        await self.session.send_image(
            data, caption=caption, filename=file_path.name, content_type=content_type
        )

    async def run(self, stream: TextIO | None = None) -> None:
        self._start_reader(stream or sys.stdin)

        while not self.stop_event.is_set():
            line_task = asyncio.ensure_future(self._lines.get())
            stop_task = asyncio.ensure_future(self.stop_event.wait())
            done, pending = await asyncio.wait(
                {line_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            if line_task not in done:
                break
            line = line_task.result()
            if line is None or not await self.handle_line(line):
                break


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="roomchat", description="Room chat client")
    parser.add_argument("--backend", help="Backend base URL (overrides config)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    for name in ("login", "signup"):
        p = sub.add_parser(name, help=f"{name.capitalize()} and store the token")
        p.add_argument("--username", help="Username (defaults to the configured one)")

    sub.add_parser("logout", help="Forget the stored token")
    sub.add_parser("rooms", help="List rooms")

    p = sub.add_parser("create", help="Create a room")
    p.add_argument("name", help="Room name")

    p = sub.add_parser("delete", help="Delete a room")
    p.add_argument("room_id", help="Room id")

    p = sub.add_parser("join", help="Open a room and chat")
    p.add_argument("room_id", help="Room id")

    return parser


async def _authenticate(args: argparse.Namespace, config: dict, api: ChatAPI, store: TokenFileStore) -> int:
    username = args.username or config.get("username") or input("Username: ")
    username = username.strip()
    if not username:
        print("Username cannot be empty.", file=sys.stderr)
        return 2
    password = getpass.getpass("Password: ")

    if args.command == "signup":
        token = await api.signup(username, password)
    else:
        token = await api.login(username, password)

    store.save(token)
    config["username"] = username
    save_config(config)
    print(f"Logged in as {username}.")
    return 0


async def _join(room_id: str, config: dict, api: ChatAPI, store: TokenFileStore) -> int:
    normalized = normalize_room_id(room_id)
    if normalized is None:
        print(f"Invalid room id: {room_id!r}", file=sys.stderr)
        return 2

    session = RoomSession(normalized, store, api, SessionConfig.from_config(config))
    console = RoomConsole(session)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, console.stop_event.set)

    try:
        await session.open()
        if session.state is SessionState.STREAMING:
            await console.run()
    except RoomChatError as e:
        print(f"Could not open room {normalized}: {e}", file=sys.stderr)
        return 1
    finally:
        await session.close()

    return 1 if session.state is SessionState.ERRORED else 0


async def main_async(args: argparse.Namespace) -> int:
    """Run one command.

    Returns:
        Process exit code
    """
    config = load_config()
    if args.backend:
        config["backend_url"] = args.backend

    store = TokenFileStore(config["token_path"])
    async with ChatAPI(config["backend_url"], timeout_s=SessionConfig.from_config(config).history_timeout_s) as api:
        try:
            if args.command in ("login", "signup"):
                return await _authenticate(args, config, api, store)

            if args.command == "logout":
                removed = store.clear()
                print("Logged out." if removed else "No stored token.")
                return 0

            if args.command == "rooms":
                rooms = await api.list_rooms(store.load())
                if not rooms:
                    print("No rooms.")
                for room_id, name in rooms.items():
                    print(f"{room_id}\t{name or 'Unnamed Room'}")
                return 0

            if args.command == "create":
                name = sanitize_display_name(args.name)
                if not name:
                    print("Room name cannot be empty.", file=sys.stderr)
                    return 2
                await api.create_room(store.load(), name)
                print(f"Created room {name}.")
                return 0

            if args.command == "delete":
                await api.delete_room(store.load(), args.room_id)
                print(f"Deleted room {args.room_id}.")
                return 0

            if args.command == "join":
                return await _join(args.room_id, config, api, store)
        except APIError as e:
            logger.error("Request failed: %s", e)
            print(str(e), file=sys.stderr)
            return 1

    return 2


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    setup_logging()
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        code = asyncio.run(main_async(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        code = 130
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        sys.exit(1)

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
