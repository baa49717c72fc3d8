"""Command-line voice client for the pairing relay.

Provides a terminal front end for a NegotiationSession: the microphone is
captured with aiortc, the partner's audio is played through sounddevice and
notifications are printed to the console.
"""

import argparse
import asyncio
import logging
import signal
import sys
import threading
from pathlib import Path

from src.client.capabilities import Notifier
from src.client.config import ClientConfig
from src.client.negotiation import ConnectionState, NegotiationSession
from src.client.signaling import WebSocketSignalingConnector
from src.client.webrtc import AiortcTransportFactory, MicrophoneCapability, SpeakerSink

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /start      - Look for a partner
  /next       - Leave this partner and find another
  /mute       - Mute your partner's audio
  /unmute     - Unmute your partner's audio
  /mute-mic   - Mute your microphone
  /unmute-mic - Unmute your microphone
  /end        - End the call or stop searching
  /status     - Show the current connection state
  /quit       - Exit client
  /help       - Show this help
"""

STATUS_TEXT = {
    ConnectionState.IDLE: "Idle. Type /start to find someone.",
    ConnectionState.SEARCHING: "Searching for someone to chat with...",
    ConnectionState.CONNECTING: "Partner found, connecting...",
    ConnectionState.CONNECTED: "Connected. Say hello!",
}


class ConsoleNotifier(Notifier):
    """Prints notifications as console lines."""

    def notify(self, title: str, description: str, error: bool = False) -> None:
        marker = "!" if error else "*"
        print(f"\n[{marker}] {title}: {description}")


def _read_stdin(loop: asyncio.AbstractEventLoop, lines: asyncio.Queue[str | None]) -> None:
    """Forward stdin lines to the event loop (None on EOF)."""
    while True:
        try:
            line: str | None = input()
        except EOFError:
            line = None
        try:
            loop.call_soon_threadsafe(lines.put_nowait, line)
        except RuntimeError:
            # Event loop already closed
            return
        if line is None:
            return


class CLIClient:
    """Interactive voice client driven from stdin."""

    def __init__(self, config: ClientConfig) -> None:
        """Initialize CLI client.

        Args:
            config: Client configuration
        """
        self.config = config
        self.running = True
        self.speaker = SpeakerSink(device=config.audio.device)
        self.session = NegotiationSession(
            media=MicrophoneCapability(config.audio),
            transport_factory=AiortcTransportFactory(config.ice),
            connector=WebSocketSignalingConnector(config.server_url),
            notifier=ConsoleNotifier(),
            config=config,
            on_remote_track=self.speaker.play,
        )

    def handle_command(self, command: str) -> None:
        """Apply one slash command to the session.

        Args:
            command: Command name without the leading slash
        """
        if command == "quit":
            self.running = False
        elif command == "help":
            print(HELP_TEXT)
        elif command == "status":
            status = STATUS_TEXT[self.session.state]
            if self.speaker.muted:
                status += " (partner muted)"
            if self.session.muted:
                status += " (mic muted)"
            print(status)
        elif command == "start":
            self.session.start()
        elif command == "next":
            self.session.next()
        elif command == "end":
            self.session.end()
        elif command in ("mute", "unmute"):
            self.speaker.set_muted(command == "mute")
        elif command in ("mute-mic", "unmute-mic"):
            self.session.set_muted(command == "mute-mic")
        else:
            print(f"Unknown command: {command}")
            print("Type /help for available commands")

    async def input_loop(self) -> None:
        """Handle user input from stdin."""
        print("\n" + "=" * 60)
        print("Voice Chat CLI Client")
        print("=" * 60)
        print(HELP_TEXT)

        lines: asyncio.Queue[str | None] = asyncio.Queue()
        # Daemon thread so a pending input() never blocks interpreter exit
        reader = threading.Thread(
            target=_read_stdin, args=(asyncio.get_running_loop(), lines), daemon=True
        )
        reader.start()

        while self.running:
            print("> ", end="", flush=True)
            text = await lines.get()
            if text is None:
                self.running = False
                break

            text = text.strip()
            if not text:
                continue
            if not text.startswith("/"):
                print("Commands start with /, type /help for the list")
                continue

            self.handle_command(text[1:].lower())

        print("\nGoodbye!")

    async def run(self) -> None:
        """Run the CLI client until /quit, EOF or a signal."""
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            self.running = False

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        input_task = asyncio.create_task(self.input_loop())
        try:
            while self.running and not input_task.done():
                await asyncio.sleep(0.2)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

            input_task.cancel()
            await self.session.close()
            await self.speaker.stop()
            logger.info("CLI client stopped")


def main() -> None:
    """Main entry point for CLI client."""
    parser = argparse.ArgumentParser(description="Anonymous 1:1 voice chat client")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/client.yaml"),
        help="Path to client configuration file (default: configs/client.yaml)",
    )
    parser.add_argument(
        "--server-url",
        type=str,
        default=None,
        help="Signaling WebSocket URL (overrides config, e.g. ws://localhost:8080/ws)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    config = ClientConfig.from_yaml_with_defaults(args.config)
    if args.server_url:
        config = ClientConfig.model_validate({**config.model_dump(), "server_url": args.server_url})

    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        asyncio.run(CLIClient(config).run())
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
