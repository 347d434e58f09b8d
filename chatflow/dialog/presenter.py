"""
Presentation boundary - what the flow engine asks of a UI.

The engine never waits on timing or animation. It hands a slice of
messages to the presenter together with a ticket, and only commits
the slice to the conversation state once the presenter confirms the
ticket. A presenter may confirm synchronously inside present() or
later from its own loop (typing indicators, delays, image loading).

Usage:
    class ConsolePresenter(Presenter):
        def present(self, messages, ticket):
            for message in messages:
                print(f"{message.speaker}: {message.text}")
            ticket.confirm()

        def present_choices(self, choices):
            for i, choice in enumerate(choices):
                print(f"[{i}] {choice.label}")
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional

from chatflow.dialog.model import Choice, Message


class PresentationTicket:
    """
    Handle for one presented slice.

    A ticket settles exactly once, by confirm() or cancel(); later calls
    are ignored. Whether a confirmation is applied is up to the engine:
    a ticket issued for a conversation or node that is no longer
    current is discarded.

    Attributes:
        conversation_id: Conversation the slice was issued for
        node_name: Node the slice was issued from
        messages: The slice, in presentation order
        player: True for choice responses (player-authored)
    """

    def __init__(
        self,
        conversation_id: str,
        node_name: str,
        messages: list[Message],
        on_confirm: Callable[[PresentationTicket], bool],
        on_cancel: Optional[Callable[[PresentationTicket], None]] = None,
        player: bool = False,
    ):
        self.conversation_id = conversation_id
        self.node_name = node_name
        self.messages = list(messages)
        self.player = player
        self._on_confirm = on_confirm
        self._on_cancel = on_cancel
        self._settled = False
        self._cancelled = False

    @property
    def settled(self) -> bool:
        return self._settled

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def confirm(self) -> bool:
        """
        Report that every message in the slice was shown.

        Returns:
            True if the engine applied the slice
        """
        if self._settled:
            return False
        self._settled = True
        return self._on_confirm(self)

    def cancel(self) -> None:
        """Settle without effect."""
        if self._settled:
            return
        self._settled = True
        self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel(self)

    def __repr__(self) -> str:
        return (
            f"PresentationTicket({self.conversation_id}:{self.node_name}, "
            f"{len(self.messages)} messages)"
        )


class Presenter(ABC):
    """
    Base class for presentation layers.

    Override present and present_choices. The remaining hooks default
    to doing nothing.
    """

    @abstractmethod
    def present(self, messages: list[Message], ticket: PresentationTicket) -> None:
        """
        Show a slice of messages, then confirm the ticket.

        Media keys are opaque; failing to resolve one must not stop the
        ticket from being confirmed.
        """
        pass

    @abstractmethod
    def present_choices(self, choices: list[Choice]) -> None:
        """Offer choices; the player's pick comes back via FlowEngine.select_choice."""
        pass

    def present_pause(self) -> None:
        """Show a 'continue' affordance; FlowEngine.resume picks up from here."""
        pass

    def present_end(self, content_error: bool = False) -> None:
        """
        Show the end of the story.

        Args:
            content_error: True if the story stopped on an authoring bug
                rather than its intended ending
        """
        pass

    def discard(self, conversation_id: str) -> None:
        """Drop any cached view of a conversation (after a story reset)."""
        pass

