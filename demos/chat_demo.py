"""
Chat Demo: play a story in the terminal

Demonstrates:
- Story catalog and chapter crossing
- Pauses, choices and player responses
- Unlock events
- Resuming from a save (run it twice)

Run: python -m demos.chat_demo [story_id]
"""

import sys
from pathlib import Path

from chatcore.core.events import ChatEvent
from chatflow import ChatSession, FlowStatus, SessionConfig, configure_logging
from chatflow.dialog.model import MessageKind
from chatflow.dialog.presenter import Presenter

DEMO_ROOT = Path(__file__).parent


class ConsolePresenter(Presenter):
    """Prints every slice and confirms it straight away."""

    def present(self, messages, ticket):
        for message in messages:
            if message.kind == MessageKind.IMAGE:
                print(f"  [{message.speaker} sent a picture: {message.media_key}]")
            elif message.kind == MessageKind.SYSTEM:
                print(f"  -- {message.text} --")
            elif message.is_player:
                print(f"{'':>30}{message.text}")
            else:
                print(f"{message.speaker}: {message.text}")
        ticket.confirm()

    def present_choices(self, choices):
        for i, choice in enumerate(choices):
            print(f"  [{i + 1}] {choice.label}")

    def present_pause(self):
        print("  ... (press Enter)")

    def present_end(self, content_error=False):
        print("  == story error ==" if content_error else "  == the end ==")


def main():
    story_id = sys.argv[1] if len(sys.argv) > 1 else "emma"

    config = SessionConfig(
        stories_path=DEMO_ROOT / "stories",
        save_path=DEMO_ROOT / "saves",
        log_level="WARNING",
    )
    configure_logging(config.log_level)
    session = ChatSession(config, ConsolePresenter())
    session.start()
    session.event_bus.subscribe(
        ChatEvent.ITEM_UNLOCKED,
        lambda e: print(f"  * unlocked {e['item_id']}"),
        weak=False,
    )

    engine = session.engine
    status = engine.advance(story_id)
    try:
        while True:
            if status == FlowStatus.AWAITING_PAUSE:
                input()
                status = engine.resume(story_id)
            elif status == FlowStatus.AWAITING_CHOICE:
                picked = input("> ").strip()
                if not picked.isdigit() or not 1 <= int(picked) <= len(engine.current_node.choices):
                    continue
                status = engine.select_choice(story_id, int(picked) - 1)
            elif status in (FlowStatus.ENDED, FlowStatus.CONTENT_ERROR):
                if input("Play again? [y/N] ").strip().lower() != "y":
                    break
                engine.reset(story_id)
                status = engine.advance(story_id)
            else:
                print(f"Stopped: {status.name}")
                break
    except (KeyboardInterrupt, EOFError):
        print()
    finally:
        session.shutdown()


if __name__ == "__main__":
    main()
