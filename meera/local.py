"""
Terminal voice chat.

Type a message and press enter, or speak when local capture is enabled
(requires the deepgram extra and DEEPGRAM_API_KEY). Replies are revealed in
the terminal and, with --speak, played on the default output device.

Commands: /listen, /mute, /retry, /clear, /quit
"""

import argparse
import asyncio
import sys

from loguru import logger

from meera.audio import AudioChannel, SoundDeviceOutput
from meera.capture import DeepgramCapture
from meera.chat_client import ChatClient
from meera.config import Config, setup_logging
from meera.models import SessionState
from meera.orchestrator import TurnOrchestrator
from meera.store import ConversationStore
from meera.synthesis import SpeechSynthesisClient


class TerminalView:
    """Prints reveal progress as it grows and notifications to stderr."""

    def __init__(self):
        self.shown = ""

    def on_state(self, state: SessionState) -> None:
        if state is SessionState.REVEALING:
            self.shown = ""
            print("Meera: ", end="", flush=True)
        elif state is SessionState.LISTENING:
            print("(listening)", flush=True)
        elif self.shown:
            print(flush=True)
            self.shown = ""

    def on_reveal(self, prefix: str) -> None:
        if prefix.startswith(self.shown):
            print(prefix[len(self.shown):], end="", flush=True)
        self.shown = prefix

    def on_transcript(self, text: str) -> None:
        if text:
            print(f"\r... {text}", end="", flush=True)

    def on_notify(self, notification) -> None:
        print(f"\n[{notification.title}] {notification.message}", file=sys.stderr, flush=True)


def build_orchestrator(args) -> TurnOrchestrator:
    output = None
    if args.speak:
        try:
            output = SoundDeviceOutput()
        except (ImportError, OSError) as e:
            logger.warning(f"Audio output unavailable, replies will be silent: {e}")

    capture = DeepgramCapture() if args.voice else None

    return TurnOrchestrator(
        ConversationStore(args.history or Config.HISTORY_PATH),
        ChatClient(provider=args.provider),
        capture=capture,
        synthesizer=SpeechSynthesisClient(),
        audio=AudioChannel(output),
        speak_replies=args.speak,
    )


async def run(args) -> None:
    orchestrator = build_orchestrator(args)
    view = TerminalView()
    orchestrator.on_state = view.on_state
    orchestrator.on_reveal = view.on_reveal
    orchestrator.on_transcript = view.on_transcript
    orchestrator.on_notify = view.on_notify

    for problem in Config.validate():
        logger.warning(f"[CONFIG] {problem}")

    if orchestrator.capture is not None:
        if orchestrator.capture_supported:
            orchestrator.listen()
        else:
            logger.warning("Voice capture is not available; typed input still works")

    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            command = line.strip()
            if command == "/quit":
                break
            elif command == "/listen":
                orchestrator.listen()
            elif command == "/mute":
                orchestrator.mute()
            elif command == "/retry":
                orchestrator.retry_capture()
            elif command == "/clear":
                orchestrator.clear_conversation()
            elif orchestrator.submit(command):
                await orchestrator.settle()
            elif command:
                print("(still waiting for the previous reply)", file=sys.stderr)
    finally:
        await orchestrator.close()


def main():
    p = argparse.ArgumentParser(description="Chat with Meera in the terminal")
    p.add_argument("--provider", choices=["gemini", "ollama"], default=None)
    p.add_argument("--voice", action="store_true", help="listen on the local microphone")
    p.add_argument("--speak", action="store_true", help="play synthesized replies")
    p.add_argument("--history", default=None, help="conversation log path")
    p.add_argument("--log-level", default=None)
    args = p.parse_args()

    setup_logging(args.log_level)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
